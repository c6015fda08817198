"""Tests for content hashing."""

import hashlib

import pytest

from promptvault.core.errors import IntegrityError
from promptvault.core.integrity import IntegrityVerifier


def test_hash_matches_sha256():
    verifier = IntegrityVerifier()

    assert verifier.hash(b"prompt") == hashlib.sha256(b"prompt").hexdigest()


def test_hash_file_matches_hash(tmp_path):
    verifier = IntegrityVerifier()
    data = b"x" * 20000
    path = tmp_path / "payload.bin"
    path.write_bytes(data)

    assert verifier.hash_file(path) == verifier.hash(data)


def test_verify_and_require():
    verifier = IntegrityVerifier()
    digest = verifier.hash(b"original")

    assert verifier.verify(b"original", digest)
    assert not verifier.verify(b"tampered", digest)
    verifier.require(b"original", digest, "test payload")
    with pytest.raises(IntegrityError, match="Checksum mismatch for test payload"):
        verifier.require(b"tampered", digest, "test payload")
