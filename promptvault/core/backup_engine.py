"""Core Backup Engine for PromptVault"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from promptvault.utils.retention_manager import RetentionManager

from .config_manager import ConfigManager
from .diff_engine import DiffEngine
from .errors import BackupError, BackupTimeoutError, ChainBrokenError, ConfigurationError, IntegrityError, StorageIOError
from .integrity import IntegrityVerifier
from .models import (
    BackupOptions,
    BackupRecord,
    BackupType,
    Deadline,
    RestoreOptions,
    RestoreResult,
    RetentionPolicy,
    Snapshot,
    VerificationResult,
)
from .restore import RestoreOrchestrator
from .snapshot_store import Attachment, SnapshotStore
from .sources import JsonFileSource, SourceReader, SqliteSource
from .transforms import TransformPipeline

LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB max per log file
LOG_BACKUP_COUNT = 5  # Number of rotated log files to keep

# Settings stripped from snapshots when backup.exclude_sensitive is on
DEFAULT_SENSITIVE_SETTINGS = ["openaiApiKey"]

COMPONENT_LOGGERS = (
    "BackupEngine",
    "SnapshotStore",
    "RestoreOrchestrator",
    "RetentionManager",
    "BackupScheduler",
    "DiffEngine",
    "SqliteSource",
    "ConfigManager",
)


class OperationGuard:
    """The single "backup-or-restore in progress" section

    Restores take priority: while one is waiting, new backups wait behind it
    and scheduled ticks are refused.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._active: str | None = None
        self._pending_restores = 0

    @property
    def active(self) -> str | None:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None or self._pending_restores > 0

    def try_acquire(self, operation: str) -> bool:
        """Enter the section without waiting. Returns False if anything is running or queued."""
        with self._condition:
            if self.busy:
                return False
            self._active = operation
            return True

    def release(self) -> None:
        with self._condition:
            self._active = None
            self._condition.notify_all()

    @contextmanager
    def hold(self, operation: str, timeout: float | None = None) -> Iterator[None]:
        """Wait for the section, then hold it for the duration of the block

        Raises:
            BackupTimeoutError: The section did not free up within ``timeout`` seconds
        """
        is_restore = operation == "restore"
        with self._condition:
            if is_restore:
                self._pending_restores += 1
            try:
                acquired = self._condition.wait_for(
                    lambda: self._active is None and (is_restore or self._pending_restores == 0),
                    timeout,
                )
            finally:
                if is_restore:
                    self._pending_restores -= 1
                    self._condition.notify_all()
            if not acquired:
                raise BackupTimeoutError(f"Timed out waiting for '{self._active}' to finish before {operation}")
            self._active = operation

        try:
            yield
        finally:
            self.release()


class BackupEngine:
    """Main backup orchestrator for the prompt collection

    An explicit value built from configuration; pass it to whoever needs it.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        source: SourceReader | None = None,
        setup_logging: bool = True,
    ):
        self.config = config_manager
        self.backup_dir: Path = self.config.get_backup_dir()
        self.compress = bool(self.config.get_setting("backup.compress", True))
        self.encrypt = bool(self.config.get_setting("backup.encrypt", False))
        self.exclude_sensitive = bool(self.config.get_setting("backup.exclude_sensitive", False))
        self.sensitive_settings = list(self.config.get_setting("backup.sensitive_settings", DEFAULT_SENSITIVE_SETTINGS))
        self.encryption_key = self.config.get_encryption_key(create=self.encrypt)

        source_paths = self.config.get_source_paths()
        self.source = source if source is not None else self._default_source(source_paths)

        self.diff_engine = DiffEngine()
        self.pipeline = TransformPipeline()
        self.verifier = IntegrityVerifier()
        self.store = SnapshotStore(
            self.backup_dir,
            pipeline=self.pipeline,
            verifier=self.verifier,
            diff_engine=self.diff_engine,
            attachments=self._build_attachments(source_paths),
        )
        self.restorer = RestoreOrchestrator(self.store, self.diff_engine, self.verifier)
        self.store.base_loader = self.restorer.load_snapshot
        self.retention = RetentionManager(self.store, config=self.config)
        self.guard = OperationGuard()
        self.last_skip_reason: str | None = None

        if setup_logging:
            self._setup_logger()
        self.logger = logging.getLogger("BackupEngine")

    @staticmethod
    def _default_source(source_paths: dict[str, Path | None]) -> SourceReader | None:
        if source_paths["sqlite"] is not None:
            return SqliteSource(source_paths["sqlite"])
        if source_paths["json"] is not None:
            return JsonFileSource(source_paths["json"])
        return None

    def _build_attachments(self, source_paths: dict[str, Path | None]) -> list[Attachment]:
        attachments = []
        if source_paths["sqlite"] is not None:
            attachments.append(Attachment(type="database", path=source_paths["sqlite"], method="sqlite"))
        for extra in self.config.get_extra_attachments():
            attachments.append(Attachment(type="file", path=extra))
        return attachments

    def _setup_logger(self) -> None:
        """Set up logging with automatic rotation"""
        log_dir = self.backup_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        loggers = [logging.getLogger(name) for name in COMPONENT_LOGGERS]
        for logger in loggers:
            logger.setLevel(logging.INFO)
        unconfigured = [logger for logger in loggers if not logger.handlers]
        if not unconfigured:
            return

        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        # Rotating file handler (10MB max, keep 5 backup files), shared so rotation happens once
        fh = RotatingFileHandler(
            log_dir / "backup.log",
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.setLevel(logging.INFO)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.WARNING)

        fh.setFormatter(formatter)
        ch.setFormatter(formatter)
        for logger in unconfigured:
            logger.addHandler(fh)
            logger.addHandler(ch)

    def _resolve_timeout(self, timeout: float | None, operation: str) -> float | None:
        if timeout is None:
            return self.config.get_timeout(operation)
        if timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive, got {timeout}")
        return timeout

    def _read_live(self) -> Snapshot:
        if self.source is None:
            raise ConfigurationError("No snapshot supplied and no live source is configured")
        return self.source.read_snapshot()

    def _redact(self, snapshot: Snapshot, exclude: bool | None = None) -> Snapshot:
        """Drop sensitive settings before a snapshot is persisted"""
        if not (self.exclude_sensitive if exclude is None else exclude):
            return snapshot
        return snapshot.without_settings(self.sensitive_settings)

    def _read_live_redacted(self) -> Snapshot:
        return self._redact(self._read_live())

    def _run_retention(self) -> None:
        """Cleanup after a successful backup. Failures are logged, the backup stands."""
        try:
            self.retention.cleanup()
        except BackupError as e:
            self.logger.error(f"Retention cleanup after backup failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_backup(
        self,
        snapshot: Snapshot | None = None,
        backup_type: BackupType | str = BackupType.FULL,
        options: BackupOptions | None = None,
    ) -> BackupRecord | None:
        """Create a backup

        Args:
            snapshot: Snapshot to back up (read from the live source if omitted)
            backup_type: 'full', 'incremental', 'differential' or 'restore-point'
            options: Description, base backup id, transform overrides, timeout

        Returns:
            The published BackupRecord, or None when ``options.skip_unchanged``
            is set and nothing changed since the base
        """
        try:
            backup_type = BackupType(backup_type)
        except ValueError as e:
            raise ConfigurationError(f"Unknown backup type: {backup_type}") from e
        options = options or BackupOptions()
        deadline = Deadline(self._resolve_timeout(options.timeout, "backup"), "backup")

        try:
            with self.guard.hold("backup", deadline.remaining()):
                return self._create_backup_locked(snapshot, backup_type, options, deadline)
        except BackupError as e:
            self.logger.error(f"Failed to create {backup_type.value} backup: {e}", exc_info=True)
            raise

    def _create_backup_locked(
        self,
        snapshot: Snapshot | None,
        backup_type: BackupType | str,
        options: BackupOptions,
        deadline: Deadline,
    ) -> BackupRecord | None:
        if snapshot is None:
            snapshot = self._read_live()
        record = self.store.create_backup(
            self._redact(snapshot, options.exclude_sensitive),
            backup_type,
            options,
            key=self.encryption_key,
            compress=self.compress,
            encrypt=self.encrypt,
            deadline=deadline,
        )
        if record is not None:
            self._run_retention()
        return record

    def run_scheduled_backup(self) -> BackupRecord | None:
        """Incremental backup for the scheduler

        Returns None without waiting if the guard is busy, and None when
        ``scheduler.skip_unchanged`` is on and nothing changed. The reason is
        left in ``last_skip_reason``.
        """
        if not self.guard.try_acquire("backup"):
            self.last_skip_reason = f"'{self.guard.active or 'restore'}' in progress"
            return None

        try:
            options = BackupOptions(
                description="Scheduled backup",
                trigger="scheduled",
                skip_unchanged=bool(self.config.get_setting("scheduler.skip_unchanged", True)),
            )
            deadline = Deadline(self.config.get_timeout("backup"), "backup")
            record = self._create_backup_locked(None, BackupType.INCREMENTAL, options, deadline)
        finally:
            self.guard.release()

        self.last_skip_reason = None if record is not None else "no changes since the last backup"
        return record

    def list_backups(
        self,
        backup_type: BackupType | str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        """List published backups, newest first"""
        return self.store.list_records(backup_type, since, limit)

    def verify_backup(self, backup_id: str, decryption_key: str | None = None) -> VerificationResult:
        """Verify backup integrity

        Checks that the payload and every manifest component exist and match,
        that the content hash matches after reversing the transforms, and
        that the base chain resolves.

        Raises:
            NotFoundError: Unknown backup id
            ConfigurationError: The backup is encrypted and no key is available
        """
        key = decryption_key or self.encryption_key

        with self.guard.hold("verify"):
            record = self.store.get(backup_id)
            if record.encrypted and not key:
                raise ConfigurationError(f"Backup '{backup_id}' is encrypted and no decryption key was supplied")

            self.logger.info(f"Verifying backup: {backup_id}")
            issues = self.store.verify_components(record)
            if not issues:
                try:
                    self.store.load_payload(record, key)
                except (IntegrityError, StorageIOError) as e:
                    issues.append(str(e))

            if not record.type.has_full_payload:
                try:
                    self.store.chain(backup_id)
                except ChainBrokenError as e:
                    issues.append(str(e))

        if issues:
            self.logger.error(f"Verification failed for {backup_id}: {'; '.join(issues)}")
        else:
            self.logger.info(f"Verification successful for {backup_id}")
        return VerificationResult(backup_id=backup_id, valid=not issues, issues=issues)

    def restore(self, backup_id: str, options: RestoreOptions | None = None) -> RestoreResult:
        """Restore a backup into a verified snapshot

        The engine never writes live storage; apply ``result.snapshot`` with a
        SourceWriter.
        """
        options = options or RestoreOptions()
        deadline = Deadline(self._resolve_timeout(options.timeout, "restore"), "restore")
        current = self._read_live_redacted if self.source is not None else None

        try:
            with self.guard.hold("restore", deadline.remaining()):
                result = self.restorer.restore(
                    backup_id,
                    options,
                    current=current,
                    key=self.encryption_key,
                    compress=self.compress,
                    encrypt=self.encrypt,
                    deadline=deadline,
                )
                if result.restore_point is not None:
                    self._run_retention()
                return result
        except BackupError as e:
            self.logger.error(f"Failed to restore backup '{backup_id}': {e}", exc_info=True)
            raise

    def cleanup(self, policy: RetentionPolicy | None = None, dry_run: bool = False) -> list[BackupRecord]:
        """Apply the retention policy on demand"""
        with self.guard.hold("cleanup"):
            return self.retention.cleanup(policy, dry_run=dry_run)

    def delete_backup(self, backup_id: str) -> BackupRecord:
        """Delete a backup on explicit request"""
        with self.guard.hold("delete"):
            return self.store.delete(backup_id)

    def get_backup_statistics(self) -> dict[str, Any]:
        """Totals and per-type breakdown of the stored backups"""
        records = self.store.list_records()
        total_size = sum(r.size_bytes for r in records)

        type_breakdown: dict[str, int] = {}
        for record in records:
            type_breakdown[record.type.value] = type_breakdown.get(record.type.value, 0) + 1

        return {
            "total_backups": len(records),
            "total_size": total_size,
            "total_size_mb": total_size / (1024 * 1024),
            "type_breakdown": type_breakdown,
            "newest_backup": records[0].created_at.isoformat() if records else None,
            "oldest_backup": records[-1].created_at.isoformat() if records else None,
            "average_size": total_size / len(records) if records else 0,
            "compression_enabled": self.compress,
            "encryption_enabled": self.encrypt,
        }

    def export_backup_history(self) -> dict[str, Any]:
        """Serializable history of every record plus statistics"""
        return {
            "history": [record.to_dict() for record in self.store.list_records()],
            "statistics": self.get_backup_statistics(),
            "exportedAt": datetime.now().isoformat(),
            "version": "1.0",
        }

    def import_backup_history(self, history: Any, payload_dir: Path | None = None) -> dict[str, Any]:
        """Adopt records from an exported history, copying their payloads in

        Args:
            history: Output of export_backup_history, or its bare 'history' list
            payload_dir: Directory holding the exported payloads (defaults to backup_dir)

        Returns:
            Dict with 'imported', 'skipped' and 'failed' counts plus 'failures'
        """
        entries = history.get("history") if isinstance(history, dict) else history
        if not isinstance(entries, list):
            raise ConfigurationError("Invalid backup history data: expected a list of backup records")

        with self.guard.hold("import"):
            return self.store.import_records(entries, payload_dir or self.backup_dir, self.encryption_key)
