"""Per-type retention for backup records"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any

from promptvault.core.errors import StorageIOError
from promptvault.core.models import BackupRecord, BackupType, RetentionPolicy

if TYPE_CHECKING:
    from promptvault.core.config_manager import ConfigManager
    from promptvault.core.snapshot_store import SnapshotStore


class RetentionManager:
    """Enforce max-count / max-age limits per backup type

    The newest full backup is never removed, whatever the limits say.
    """

    def __init__(
        self,
        store: "SnapshotStore",
        policy: RetentionPolicy | None = None,
        config: "ConfigManager | None" = None,
    ):
        self.store = store
        self.logger = logging.getLogger("RetentionManager")
        if policy:
            self.default_policy = policy
        elif config:
            self.default_policy = RetentionPolicy.from_settings(config.get_setting("retention", None))
        else:
            self.default_policy = RetentionPolicy.from_settings(None)

    def select_candidates(self, policy: RetentionPolicy, now: datetime | None = None) -> list[BackupRecord]:
        """Records the policy would remove, oldest first"""
        now = now or datetime.now()
        by_type: dict[BackupType, list[BackupRecord]] = defaultdict(list)
        for record in self.store.ordered():
            by_type[record.type].append(record)

        candidates: dict[str, BackupRecord] = {}
        for backup_type, records in by_type.items():
            limits = policy.for_type(backup_type)

            if limits.max_age_days is not None:
                for record in records:
                    if record.age_days(now) > limits.max_age_days:
                        candidates[record.id] = record

            if limits.max_count is not None:
                # records are oldest first; everything before the newest max_count goes
                excess = len(records) - max(limits.max_count, 0)
                for record in records[: max(excess, 0)]:
                    candidates[record.id] = record

        # Safety floor: the single most recent full backup always survives
        newest_full = self.store.latest(BackupType.FULL)
        if newest_full is not None and newest_full.id in candidates:
            self.logger.debug(f"Keeping {newest_full.id}: newest full backup")
            del candidates[newest_full.id]

        if policy.protect_chains:
            self._protect_ancestors(candidates)

        return [record for record in self.store.ordered() if record.id in candidates]

    def _protect_ancestors(self, candidates: dict[str, BackupRecord]) -> None:
        """Keep every ancestor of a retained incremental/differential backup"""
        for record in self.store.ordered():
            if record.id in candidates:
                continue
            base_id = record.base_backup_id
            while base_id and base_id in self.store.records:
                if base_id in candidates:
                    self.logger.debug(f"Keeping {base_id}: ancestor of retained backup {record.id}")
                    del candidates[base_id]
                base_id = self.store.records[base_id].base_backup_id

    def cleanup(self, policy: RetentionPolicy | None = None, dry_run: bool = False) -> list[BackupRecord]:
        """Apply the retention policy

        Args:
            policy: Policy to apply (defaults to the configured one)
            dry_run: Preview without deleting anything

        Returns:
            Records removed (or that would be removed on a dry run)
        """
        policy = policy or self.default_policy
        candidates = self.select_candidates(policy)

        if dry_run:
            for record in candidates:
                self.logger.info(f"Would delete: {record.id} ({record.type.value}, {record.created_at.isoformat()})")
            return candidates

        removed: list[BackupRecord] = []
        for record in candidates:
            try:
                self.store.delete_payload(record)
            except StorageIOError as e:
                # Metadata stays so the next pass retries
                self.logger.error(f"Failed to delete {record.id}: {e}")
                continue
            removed.append(record)
            self.logger.info(f"Deleted: {record.id} (type: {record.type.value})")

        if removed:
            self.store.drop_records([record.id for record in removed])
            self.logger.info(f"Retention cleanup removed {len(removed)} backup(s)")
        return removed

    def get_retention_status(self) -> dict[str, Any]:
        """Current counts, sizes and age range per backup type"""
        status: dict[str, Any] = {"types": {}, "total_backups": 0, "total_size": 0}

        for backup_type in BackupType:
            records = self.store.list_records(backup_type)
            limits = self.default_policy.for_type(backup_type)
            status["types"][backup_type.value] = {
                "count": len(records),
                "size": sum(r.size_bytes for r in records),
                "max_count": limits.max_count,
                "max_age_days": limits.max_age_days,
                "newest": records[0].created_at.isoformat() if records else None,
                "oldest": records[-1].created_at.isoformat() if records else None,
            }
            status["total_backups"] += len(records)
            status["total_size"] += sum(r.size_bytes for r in records)

        status["pending_removal"] = len(self.select_candidates(self.default_policy))
        return status
