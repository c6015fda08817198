"""Periodic incremental backups on a background thread"""

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any

from promptvault.core.errors import BackupError

if TYPE_CHECKING:
    from promptvault.core.backup_engine import BackupEngine

DEFAULT_INTERVAL_MINUTES = 1440


class BackupScheduler:
    """Run an incremental backup every ``interval_seconds``

    A tick never queues behind a running backup or restore: it is skipped and
    the next tick tries again.
    """

    def __init__(self, engine: "BackupEngine", interval_seconds: float | None = None):
        """Initialize the scheduler

        Args:
            engine: BackupEngine instance
            interval_seconds: Seconds between ticks (defaults to scheduler.interval_minutes)
        """
        self.engine = engine
        if interval_seconds is None:
            minutes = engine.config.get_setting("scheduler.interval_minutes", DEFAULT_INTERVAL_MINUTES)
            interval_seconds = float(minutes) * 60
        if interval_seconds <= 0:
            raise ValueError(f"Scheduler interval must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.logger = logging.getLogger("BackupScheduler")

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_lock = threading.Lock()

        self.last_run: datetime | None = None
        self.last_error: str | None = None
        self.runs = 0
        self.skipped = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread (no-op if already running)"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="BackupScheduler", daemon=True)
        self._thread.start()
        self.logger.info(f"Scheduler started: every {self.interval_seconds:.0f}s")

    def stop(self, timeout: float | None = None) -> None:
        """Signal the thread to stop and wait for it"""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("Scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.tick()

    def tick(self) -> bool:
        """Run one scheduled backup

        Returns:
            True if a backup was created, False if the tick was skipped or failed
        """
        if not self._tick_lock.acquire(blocking=False):
            self._skip("previous scheduled backup still running")
            return False

        try:
            record = self.engine.run_scheduled_backup()
            if record is None:
                self._skip(self.engine.last_skip_reason or "nothing to back up")
                return False
            self.runs += 1
            self.last_run = datetime.now()
            self.last_error = None
            self.logger.info(f"Scheduled backup created: {record.id} ({record.type.value})")
            return True
        except BackupError as e:
            # Keep the thread alive, the next tick retries
            self.last_error = str(e)
            self.logger.error(f"Scheduled backup failed: {e}", exc_info=True)
            return False
        finally:
            self._tick_lock.release()

    def _skip(self, reason: str) -> None:
        self.skipped += 1
        self.logger.info(f"Skipping scheduled backup: {reason}")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "runs": self.runs,
            "skipped": self.skipped,
        }
