"""Content-hash integrity checks for serialized snapshots"""

import hashlib
import hmac
from pathlib import Path

from .errors import IntegrityError

HASH_ALGORITHM = "sha256"


class IntegrityVerifier:
    """Compute and validate content hashes

    Hashes are always taken over the serialized payload, before compression
    and encryption, so verification must reverse the transform pipeline first.
    """

    def __init__(self, algorithm: str = HASH_ALGORITHM):
        self.algorithm = algorithm

    def hash(self, data: bytes) -> str:
        """Return the hex digest of ``data``"""
        return hashlib.new(self.algorithm, data).hexdigest()

    def hash_file(self, file_path: Path) -> str:
        """Hash a file in chunks"""
        hash_obj = hashlib.new(self.algorithm)
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hash_obj.update(chunk)
        return hash_obj.hexdigest()

    def verify(self, data: bytes, digest: str) -> bool:
        return hmac.compare_digest(self.hash(data), digest)

    def require(self, data: bytes, digest: str, context: str) -> None:
        """Raise IntegrityError unless ``data`` hashes to ``digest``"""
        actual = self.hash(data)
        if not hmac.compare_digest(actual, digest):
            raise IntegrityError(f"Checksum mismatch for {context}. Expected: {digest} Actual: {actual}")
