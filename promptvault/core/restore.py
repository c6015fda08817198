"""Restore Orchestrator: resolves backup chains and rebuilds snapshots"""

import json
import logging
from collections.abc import Callable

from .diff_engine import DiffEngine
from .errors import ConfigurationError, IntegrityError
from .integrity import IntegrityVerifier
from .models import (
    BackupOptions,
    BackupRecord,
    BackupType,
    ChangeSet,
    Deadline,
    RestoreOptions,
    RestoreResult,
    Snapshot,
)
from .snapshot_store import SnapshotStore

SnapshotProvider = Callable[[], Snapshot]


class RestoreOrchestrator:
    """Rebuild a verified snapshot from a backup and its ancestors

    Nothing here writes live storage: the reconstructed snapshot is handed
    back to the caller, who applies it through a SourceWriter.
    """

    def __init__(
        self,
        store: SnapshotStore,
        diff_engine: DiffEngine | None = None,
        verifier: IntegrityVerifier | None = None,
    ):
        self.store = store
        self.diff_engine = diff_engine or store.diff_engine
        self.verifier = verifier or store.verifier
        self.logger = logging.getLogger("RestoreOrchestrator")

    def resolve_chain(self, backup_id: str, key: str | None) -> list[BackupRecord]:
        """Resolve the chain and check it can be decoded, before loading anything

        Raises:
            NotFoundError: Unknown backup id
            ChainBrokenError: An ancestor is missing
            ConfigurationError: An encrypted record in the chain has no key
        """
        chain = self.store.chain(backup_id)
        encrypted = [record.id for record in chain if record.encrypted]
        if encrypted and not key:
            raise ConfigurationError(
                f"Backup chain for '{backup_id}' contains encrypted backups ({', '.join(encrypted)}) "
                "but no decryption key was supplied"
            )
        return chain

    def load_snapshot(self, backup_id: str, key: str | None = None, deadline: Deadline | None = None) -> Snapshot:
        """Reconstruct the snapshot a backup represents, verifying every payload"""
        return self._reconstruct(self.resolve_chain(backup_id, key), key, deadline or Deadline(None))

    def _reconstruct(self, chain: list[BackupRecord], key: str | None, deadline: Deadline) -> Snapshot:
        root, *changes = chain
        try:
            snapshot = Snapshot.from_dict(json.loads(self.store.load_payload(root, key)))
        except (ValueError, KeyError, TypeError) as e:
            raise IntegrityError(f"Backup '{root.id}' does not contain a valid snapshot: {e}") from e
        deadline.check(f"loading {root.id}")

        for record in changes:
            try:
                change_set = ChangeSet.from_dict(json.loads(self.store.load_payload(record, key)))
            except (ValueError, KeyError, TypeError) as e:
                raise IntegrityError(f"Backup '{record.id}' does not contain a valid change set: {e}") from e
            snapshot = self.diff_engine.reconstruct(snapshot, change_set)
            self.logger.debug(f"Replayed {record.id} ({record.type.value}): {change_set.summary()}")
            deadline.check(f"replaying {record.id}")

        target = chain[-1]
        if target.snapshot_hash:
            self.verifier.require(snapshot.serialize(), target.snapshot_hash, f"reconstructed snapshot of '{target.id}'")
        return snapshot

    def restore(
        self,
        backup_id: str,
        options: RestoreOptions | None = None,
        current: SnapshotProvider | None = None,
        key: str | None = None,
        compress: bool = True,
        encrypt: bool = False,
        deadline: Deadline | None = None,
    ) -> RestoreResult:
        """Restore a backup to a complete, verified snapshot

        Args:
            backup_id: Backup to restore
            options: Restore options (safety backup, decryption key, timeout)
            current: Provider of the live snapshot for the safety restore point
            key: Default key when options carry none
            compress: Compression setting for the restore point
            encrypt: Encryption setting for the restore point
            deadline: Time ceiling shared with the caller (built from options.timeout if absent)

        Returns:
            RestoreResult holding the snapshot and the restore point, if one was taken
        """
        options = options or RestoreOptions()
        deadline = deadline or Deadline(options.timeout, "restore")
        key = options.decryption_key or key
        if not options.skip_safety_backup and current is None:
            raise ConfigurationError("A safety backup was requested but no live snapshot source is configured")

        chain = self.resolve_chain(backup_id, key)
        self.logger.info(f"Restoring {backup_id} via chain: {' -> '.join(r.id for r in chain)}")

        snapshot = self._reconstruct(chain, key, deadline)

        # Verified: from here on the restore is not cancellable
        restore_point = None
        if current is not None and not options.skip_safety_backup:
            restore_point = self.store.create_backup(
                current(),
                BackupType.RESTORE_POINT,
                BackupOptions(description=f"Safety backup before restoring {backup_id}", trigger="pre-restore"),
                key=key,
                compress=compress,
                encrypt=encrypt,
            )
            self.logger.info(f"Created restore point {restore_point.id}")

        self.logger.info(f"Restored {backup_id}: {snapshot.item_count} items")
        return RestoreResult(
            backup_id=backup_id,
            snapshot=snapshot,
            chain=[record.id for record in chain],
            restore_point=restore_point,
        )
