"""Typed failures raised by the backup engine"""


class BackupError(Exception):
    """Base class for all backup engine failures"""


class ConfigurationError(BackupError):
    """Invalid options or settings (e.g. encryption requested without a key)"""


class NotFoundError(BackupError):
    """Unknown backup id or missing base backup"""

    def __init__(self, backup_id: str, message: str | None = None):
        self.backup_id = backup_id
        super().__init__(message or f"Backup not found: {backup_id}")


class IntegrityError(BackupError):
    """Content hash mismatch or undecodable payload"""


class ChainBrokenError(BackupError):
    """An incremental/differential backup references a missing ancestor"""

    def __init__(self, backup_id: str, missing_id: str | None = None, message: str | None = None):
        self.backup_id = backup_id
        self.missing_id = missing_id
        super().__init__(
            message or f"Backup chain for '{backup_id}' is broken: ancestor '{missing_id}' is missing"
        )


class BackupTimeoutError(BackupError, TimeoutError):
    """A backup or restore exceeded the caller's time ceiling"""


class StorageIOError(BackupError, OSError):
    """Filesystem failure, carrying the path and the operation that failed"""

    def __init__(self, operation: str, path: object, cause: BaseException | None = None):
        self.operation = operation
        self.path = str(path)
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to {operation} '{self.path}'{detail}")


class IndexCorruptedError(BackupError):
    """The metadata index exists but cannot be read. Never rebuilt silently."""
