"""Reversible compression and encryption stages applied to backup payloads"""

import base64
import gzip
import os
import zlib
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigurationError, IntegrityError

GZIP = "gzip"
FERNET = "fernet"

KDF_ITERATIONS = 390_000
SALT_BYTES = 16


@dataclass
class TransformPolicy:
    """Which stages a payload went through, in write order"""

    algorithms: list[str]
    key: str | None = None
    salt: bytes | None = None

    @property
    def compressed(self) -> bool:
        return GZIP in self.algorithms

    @property
    def encrypted(self) -> bool:
        return FERNET in self.algorithms

    @property
    def extension(self) -> str:
        ext = ".json"
        if self.compressed:
            ext += ".gz"
        if self.encrypted:
            ext += ".enc"
        return ext

    @classmethod
    def build(cls, compress: bool, encrypt: bool, key: str | None = None) -> "TransformPolicy":
        """Create a write policy, failing fast if encryption has no key"""
        if encrypt and not key:
            raise ConfigurationError("Encryption requested but no encryption key was supplied")

        algorithms = []
        if compress:
            algorithms.append(GZIP)
        if encrypt:
            algorithms.append(FERNET)
        salt = os.urandom(SALT_BYTES) if encrypt else None
        return cls(algorithms=algorithms, key=key if encrypt else None, salt=salt)


def derive_fernet_key(passphrase: str, salt: bytes) -> bytes:
    """Stretch a passphrase into a Fernet key"""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class TransformPipeline:
    """Compress then encrypt on write, decrypt then decompress on read"""

    ORDER = (GZIP, FERNET)

    def apply(self, data: bytes, policy: TransformPolicy) -> bytes:
        self._check(policy)
        for algorithm in self.ORDER:
            if algorithm in policy.algorithms:
                data = self._forward(algorithm, data, policy)
        return data

    def reverse(self, data: bytes, policy: TransformPolicy) -> bytes:
        self._check(policy)
        for algorithm in reversed(self.ORDER):
            if algorithm in policy.algorithms:
                data = self._backward(algorithm, data, policy)
        return data

    def _check(self, policy: TransformPolicy) -> None:
        unknown = [a for a in policy.algorithms if a not in self.ORDER]
        if unknown:
            raise ConfigurationError(f"Unknown transform algorithm(s): {', '.join(unknown)}")
        if policy.encrypted:
            if not policy.key:
                raise ConfigurationError("Payload is encrypted but no decryption key was supplied")
            if not policy.salt:
                raise ConfigurationError("Encrypted payload is missing its key-derivation salt")

    def _fernet(self, policy: TransformPolicy) -> Fernet:
        if policy.key is None or policy.salt is None:
            raise ConfigurationError("Encryption needs both a key and a key-derivation salt")
        return Fernet(derive_fernet_key(policy.key, policy.salt))

    def _forward(self, algorithm: str, data: bytes, policy: TransformPolicy) -> bytes:
        if algorithm == GZIP:
            # mtime=0 keeps the compressed bytes deterministic
            return gzip.compress(data, mtime=0)
        return self._fernet(policy).encrypt(data)

    def _backward(self, algorithm: str, data: bytes, policy: TransformPolicy) -> bytes:
        if algorithm == GZIP:
            try:
                return gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as e:
                raise IntegrityError(f"Compressed payload is corrupt: {e}") from e
        try:
            return self._fernet(policy).decrypt(data)
        except InvalidToken as e:
            raise IntegrityError("Decryption failed: wrong key or tampered payload") from e
