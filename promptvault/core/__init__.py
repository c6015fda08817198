"""Backup engine core: data model, storage, diffing and restore."""

from promptvault.core.errors import (
    BackupError,
    BackupTimeoutError,
    ChainBrokenError,
    ConfigurationError,
    IndexCorruptedError,
    IntegrityError,
    NotFoundError,
    StorageIOError,
)
from promptvault.core.models import (
    BackupOptions,
    BackupRecord,
    BackupType,
    ChangeSet,
    Item,
    RestoreOptions,
    RestoreResult,
    RetentionPolicy,
    Snapshot,
    TypePolicy,
    VerificationResult,
)
from promptvault.core.backup_engine import BackupEngine
from promptvault.core.config_manager import ConfigManager

__all__ = [
    "BackupEngine",
    "BackupError",
    "BackupOptions",
    "BackupRecord",
    "BackupTimeoutError",
    "BackupType",
    "ChainBrokenError",
    "ChangeSet",
    "ConfigManager",
    "ConfigurationError",
    "IndexCorruptedError",
    "IntegrityError",
    "Item",
    "NotFoundError",
    "RestoreOptions",
    "RestoreResult",
    "RetentionPolicy",
    "Snapshot",
    "StorageIOError",
    "TypePolicy",
    "VerificationResult",
]
