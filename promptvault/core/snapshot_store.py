"""Snapshot Store: persists backup payloads and the metadata index"""

import json
import logging
import os
import re
import secrets
import shutil
import sqlite3
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .diff_engine import DiffEngine
from .errors import (
    BackupError,
    ChainBrokenError,
    ConfigurationError,
    IndexCorruptedError,
    IntegrityError,
    NotFoundError,
    StorageIOError,
)
from .integrity import IntegrityVerifier
from .models import (
    BackupOptions,
    BackupRecord,
    BackupType,
    Deadline,
    Manifest,
    ManifestEntry,
    Snapshot,
)
from .transforms import TransformPipeline, TransformPolicy

INDEX_FILENAME = "backup-metadata.json"
TEMP_DIRNAME = ".tmp"
BUNDLE_SUFFIX = ".bundle"
MANIFEST_FILENAME = "manifest.json"
FALLBACK_MARKER = "[fallback: raw file copy, reduced consistency]"

PAYLOAD_NAME_RE = re.compile(
    r"^(full|incremental|differential|restore-point)_\d{8}_\d{6}_(?P<id>backup_\d+_[0-9a-f]+)(\.json.*|\.bundle)$"
)

BaseLoader = Callable[[str, str | None], Snapshot]


@dataclass
class Attachment:
    """A live file captured alongside full snapshots"""

    type: str
    path: Path
    method: str = "copy"  # 'sqlite' uses the online backup API


class SnapshotStore:
    """Owns BackupRecords, their payloads and the metadata index

    Callers are expected to serialize access (BackupEngine holds the operation
    guard around every mutating call).
    """

    def __init__(
        self,
        backup_dir: Path,
        pipeline: TransformPipeline | None = None,
        verifier: IntegrityVerifier | None = None,
        diff_engine: DiffEngine | None = None,
        attachments: list[Attachment] | None = None,
    ):
        self.backup_dir = Path(backup_dir)
        self.index_path = self.backup_dir / INDEX_FILENAME
        self.temp_root = self.backup_dir / TEMP_DIRNAME
        self.pipeline = pipeline or TransformPipeline()
        self.verifier = verifier or IntegrityVerifier()
        self.diff_engine = diff_engine or DiffEngine()
        self.attachments = attachments or []
        self.logger = logging.getLogger("SnapshotStore")
        self._records_lock = threading.RLock()

        # Wired by BackupEngine to the restore orchestrator's chain replay
        self.base_loader: BaseLoader | None = None

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            self.temp_root.mkdir(exist_ok=True)
        except OSError as e:
            raise StorageIOError("create backup directory", self.backup_dir, e) from e

        self.records: dict[str, BackupRecord] = self._load_index()
        self._remove_orphans()

    # ------------------------------------------------------------------
    # Metadata index
    # ------------------------------------------------------------------

    def _load_index(self) -> dict[str, BackupRecord]:
        """Load the id -> record mapping. A corrupt index is fatal."""
        if not self.index_path.exists():
            return {}

        try:
            with open(self.index_path, encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("index root is not an object")
            return {backup_id: BackupRecord.from_dict(data) for backup_id, data in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.critical(f"Metadata index {self.index_path} is unreadable: {e}")
            raise IndexCorruptedError(
                f"Metadata index {self.index_path} is corrupted ({e}). Refusing to rebuild it automatically."
            ) from e

    def _write_index(self) -> None:
        """Rewrite the metadata index atomically (temp file + rename)"""
        data = {backup_id: record.to_dict() for backup_id, record in self.records.items()}
        fd, temp_path = tempfile.mkstemp(prefix=".backup-metadata-", suffix=".json", dir=self.backup_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.index_path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageIOError("write metadata index", self.index_path, e) from e

    def _remove_orphans(self) -> None:
        """Drop temp artifacts and unpublished payloads left by an interrupted run"""
        for leftover in self.temp_root.iterdir():
            self.logger.warning(f"Removing leftover temporary artifact: {leftover.name}")
            self._remove_path(leftover)

        for entry in self.backup_dir.iterdir():
            match = PAYLOAD_NAME_RE.match(entry.name)
            if match and match.group("id") not in self.records:
                self.logger.warning(f"Removing unpublished payload with no metadata entry: {entry.name}")
                self._remove_path(entry)

    @staticmethod
    def _remove_path(path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, backup_id: str) -> BackupRecord:
        record = self.records.get(backup_id)
        if record is None:
            raise NotFoundError(backup_id)
        return record

    def ordered(self) -> list[BackupRecord]:
        """All records, oldest first (insertion order breaks timestamp ties)"""
        with self._records_lock:
            records = list(self.records.values())
        return sorted(records, key=lambda r: r.created_at)

    def list_records(
        self,
        backup_type: BackupType | str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        """List records, newest first

        Args:
            backup_type: Only records of this type
            since: Only records created at or after this time
            limit: Maximum number of records to return
        """
        if isinstance(backup_type, str):
            backup_type = BackupType(backup_type)

        records = list(reversed(self.ordered()))
        if backup_type is not None:
            records = [r for r in records if r.type == backup_type]
        if since is not None:
            records = [r for r in records if r.created_at >= since]
        if limit is not None:
            records = records[:limit]
        return records

    def latest(self, backup_type: BackupType | None = None) -> BackupRecord | None:
        records = self.list_records(backup_type, limit=1)
        return records[0] if records else None

    def chain(self, backup_id: str) -> list[BackupRecord]:
        """Resolve the backup chain from the nearest full-payload ancestor to ``backup_id``

        Raises:
            NotFoundError: Unknown backup id
            ChainBrokenError: An ancestor is missing or the chain loops
        """
        record = self.get(backup_id)
        chain = [record]
        seen = {record.id}

        while not record.type.has_full_payload:
            base_id = record.base_backup_id
            if not base_id or base_id not in self.records:
                raise ChainBrokenError(backup_id, base_id)
            if base_id in seen:
                raise ChainBrokenError(backup_id, base_id, f"Backup chain for '{backup_id}' loops at '{base_id}'")
            record = self.records[base_id]
            seen.add(base_id)
            chain.append(record)

        chain.reverse()
        return chain

    def payload_path(self, record: BackupRecord) -> Path:
        return self.backup_dir / record.filename

    def snapshot_file(self, record: BackupRecord) -> Path:
        """Path of the serialized snapshot/change-set component"""
        path = self.payload_path(record)
        if record.manifest is None:
            return path
        for entry in record.manifest.items:
            if entry.type == "snapshot":
                return path / entry.path
        raise IntegrityError(f"Manifest of backup '{record.id}' has no snapshot component")

    # ------------------------------------------------------------------
    # Payload loading
    # ------------------------------------------------------------------

    def policy_for(self, record: BackupRecord, key: str | None) -> TransformPolicy:
        salt = bytes.fromhex(record.kdf_salt) if record.kdf_salt else None
        return TransformPolicy(algorithms=list(record.transforms), key=key, salt=salt)

    def load_payload(self, record: BackupRecord, key: str | None = None) -> bytes:
        """Read a payload, reverse its transforms and verify the content hash

        Returns:
            The serialized (pre-compression) payload bytes
        """
        path = self.snapshot_file(record)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageIOError("read payload", path, e) from e

        serialized = self.pipeline.reverse(data, self.policy_for(record, key))
        self.verifier.require(serialized, record.content_hash, f"backup '{record.id}'")
        return serialized

    def verify_components(self, record: BackupRecord) -> list[str]:
        """Check every manifest entry resolves to a materialized component"""
        issues: list[str] = []
        path = self.payload_path(record)
        if not path.exists():
            return [f"Payload not found: {record.filename}"]
        if record.manifest is None:
            return issues

        for entry in record.manifest.items:
            component = path / entry.path
            if not component.is_file():
                issues.append(f"Manifest component missing: {entry.path}")
                continue
            if component.stat().st_size != entry.size_bytes:
                issues.append(f"Manifest component size mismatch: {entry.path}")
            elif entry.sha256 and self.verifier.hash_file(component) != entry.sha256:
                issues.append(f"Manifest component checksum mismatch: {entry.path}")
        return issues

    # ------------------------------------------------------------------
    # Backup creation
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        while True:
            backup_id = f"backup_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
            if backup_id not in self.records:
                return backup_id

    def create_backup(
        self,
        snapshot: Snapshot,
        backup_type: BackupType | str,
        options: BackupOptions | None = None,
        key: str | None = None,
        compress: bool = True,
        encrypt: bool = False,
        deadline: Deadline | None = None,
    ) -> BackupRecord | None:
        """Create and publish a backup of ``snapshot``

        Args:
            snapshot: Current state of the collection
            backup_type: Requested type; incremental falls back to full without a prior backup
            options: Per-call options (description, base id, transform overrides, timeout)
            key: Encryption passphrase (used when encrypting or loading an encrypted base)
            compress: Default compression setting when options do not override it
            encrypt: Default encryption setting when options do not override it
            deadline: Time ceiling shared with the caller (built from options.timeout if absent)

        Returns:
            The published BackupRecord, or None if ``options.skip_unchanged`` is
            set and the change set against the base is empty
        """
        options = options or BackupOptions()
        backup_type = BackupType(backup_type) if isinstance(backup_type, str) else backup_type
        deadline = deadline or Deadline(options.timeout, "backup")
        key = options.encryption_key or key

        do_compress = compress if options.compress is None else options.compress
        do_encrypt = encrypt if options.encrypt is None else options.encrypt
        policy = TransformPolicy.build(do_compress, do_encrypt, key)

        notes = [options.description] if options.description else []
        trigger = options.trigger
        base: BackupRecord | None = None

        if backup_type == BackupType.INCREMENTAL:
            base = self.latest()
            if base is None:
                self.logger.info("No prior backup exists, falling back to a full backup")
                backup_type = BackupType.FULL
                trigger = "incremental-fallback"
                notes.append("Incremental requested with no prior backup; created a full backup instead")
        elif backup_type == BackupType.DIFFERENTIAL:
            if not options.base_backup_id:
                raise ConfigurationError("Differential backups require a base_backup_id")
            base = self.get(options.base_backup_id)
        elif options.base_backup_id:
            raise ConfigurationError(f"A {backup_type.value} backup does not take a base_backup_id")

        deadline.check("base resolution")
        snapshot_bytes = snapshot.serialize()

        if base is not None:
            if self.base_loader is None:
                raise ConfigurationError("No base loader configured for change-set backups")
            base_snapshot = self.base_loader(base.id, key)
            changes = self.diff_engine.diff(base_snapshot, snapshot)
            if changes.is_empty and options.skip_unchanged:
                self.logger.info(f"No changes since {base.id}, skipping {backup_type.value} backup")
                return None
            replayed = self.diff_engine.reconstruct(base_snapshot, changes).serialize()
            if self.verifier.hash(replayed) != self.verifier.hash(snapshot_bytes):
                raise IntegrityError(f"Change set against '{base.id}' does not reproduce the snapshot")
            payload = changes.serialize()
            self.logger.info(f"Change set against {base.id}: {changes.summary()}")
        else:
            payload = snapshot_bytes

        deadline.check("serialize")
        content_hash = self.verifier.hash(payload)
        data = self.pipeline.apply(payload, policy)
        deadline.check("transform")

        backup_id = self._new_id()
        now = datetime.now()
        stem = f"{backup_type.value}_{now:%Y%m%d}_{now:%H%M%S}_{backup_id}"
        attachments = self.attachments if backup_type.has_full_payload else []

        staging = Path(tempfile.mkdtemp(prefix=f"{backup_id}-", dir=self.temp_root))
        try:
            if attachments:
                filename = f"{stem}{BUNDLE_SUFFIX}"
                staged, manifest, fallback = self._stage_bundle(staging / filename, data, policy.extension, attachments)
                if fallback:
                    notes.append(FALLBACK_MARKER)
                size_bytes = manifest.total_size
            else:
                filename = f"{stem}{policy.extension}"
                staged = staging / filename
                staged.write_bytes(data)
                manifest = None
                size_bytes = len(data)
            deadline.check("write")

            record = BackupRecord(
                id=backup_id,
                type=backup_type,
                created_at=now,
                size_bytes=size_bytes,
                content_hash=content_hash,
                compressed=policy.compressed,
                encrypted=policy.encrypted,
                filename=filename,
                base_backup_id=base.id if base else None,
                description=" ".join(notes),
                item_count=snapshot.item_count,
                snapshot_hash=self.verifier.hash(snapshot_bytes),
                transforms=list(policy.algorithms),
                kdf_salt=policy.salt.hex() if policy.salt else None,
                trigger=trigger,
                manifest=manifest,
            )

            self._verify_staged(staged, record, key)
            deadline.check("verify")
            self._publish(staged, record)
        except OSError as e:
            if isinstance(e, BackupError):
                raise
            raise StorageIOError("write backup payload", staging, e) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        self.logger.info(
            f"Created {record.type.value} backup {record.id} ({record.item_count} items, {record.size_bytes} bytes)"
        )
        return record

    def _stage_bundle(
        self, bundle: Path, data: bytes, extension: str, attachments: list[Attachment]
    ) -> tuple[Path, Manifest, bool]:
        """Materialize a multi-component backup directory with its manifest"""
        bundle.mkdir()
        snapshot_name = f"snapshot{extension}"
        (bundle / snapshot_name).write_bytes(data)
        components = [("snapshot", snapshot_name)]
        fallback = False

        for attachment in attachments:
            if not attachment.path.exists():
                self.logger.warning(f"Could not back up {attachment.type}: {attachment.path} does not exist")
                continue
            target = bundle / attachment.path.name
            if attachment.method == "sqlite":
                if not self._capture_sqlite(attachment.path, target):
                    fallback = True
            else:
                shutil.copy2(attachment.path, target)
            components.append((attachment.type, attachment.path.name))

        manifest = Manifest(
            items=[
                ManifestEntry(
                    type=component_type,
                    path=name,
                    size_bytes=(bundle / name).stat().st_size,
                    sha256=self.verifier.hash_file(bundle / name),
                )
                for component_type, name in components
            ]
        )
        with open(bundle / MANIFEST_FILENAME, "w", encoding="utf-8") as f:
            json.dump(manifest.to_dict(), f, indent=2)
        return bundle, manifest, fallback

    def _capture_sqlite(self, source: Path, target: Path) -> bool:
        """Copy a live SQLite database with the online backup API

        Returns:
            True if the native primitive was used, False if it fell back to a raw copy
        """
        try:
            src = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True)
            try:
                dst = sqlite3.connect(target)
                try:
                    src.backup(dst)
                finally:
                    dst.close()
            finally:
                src.close()
            return True
        except sqlite3.Error as e:
            self.logger.warning(
                f"Native SQLite backup of {source} failed, falling back to raw file copy "
                f"(reduced consistency guarantees): {e}"
            )
            if target.exists():
                target.unlink()
            shutil.copy2(source, target)
            return False

    def _verify_staged(self, staged: Path, record: BackupRecord, key: str | None) -> None:
        """Read the staged payload back and check it before publishing"""
        snapshot_file = staged
        if record.manifest is not None:
            for entry in record.manifest.items:
                component = staged / entry.path
                if not component.is_file() or component.stat().st_size != entry.size_bytes:
                    raise IntegrityError(f"Staged component {entry.path} of backup '{record.id}' is incomplete")
                if entry.type == "snapshot":
                    snapshot_file = component

        serialized = self.pipeline.reverse(snapshot_file.read_bytes(), self.policy_for(record, key))
        self.verifier.require(serialized, record.content_hash, f"staged backup '{record.id}'")

    def _publish(self, staged: Path, record: BackupRecord) -> None:
        """Move the verified payload into place, then add it to the index"""
        final_path = self.payload_path(record)
        os.replace(staged, final_path)

        with self._records_lock:
            self.records[record.id] = record
            try:
                self._write_index()
            except BaseException:
                del self.records[record.id]
                self._remove_path(final_path)
                raise

    # ------------------------------------------------------------------
    # History import
    # ------------------------------------------------------------------

    def import_records(self, entries: list[Any], payload_dir: Path, key: str | None = None) -> dict[str, Any]:
        """Adopt records exported from another store, copying their payloads in

        Entries already in the index are skipped. Every payload is copied from
        ``payload_dir`` through the staging area and checked against its
        content hash before it is moved into place. The index is written once.

        Returns:
            Dict with 'imported', 'skipped' and 'failed' counts plus 'failures'
        """
        imported: dict[str, BackupRecord] = {}
        failures: list[dict[str, str]] = []
        skipped = 0

        for entry in entries:
            try:
                record = BackupRecord.from_dict(entry)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                backup_id = entry.get("id", "unknown") if isinstance(entry, dict) else "unknown"
                failures.append({"backup": str(backup_id), "error": f"Invalid backup entry: {e}"})
                continue

            if record.id in self.records or record.id in imported:
                skipped += 1
                continue
            try:
                self._import_payload(record, Path(payload_dir), key)
            except BackupError as e:
                failures.append({"backup": record.id, "error": str(e)})
                continue
            imported[record.id] = record

        if imported:
            with self._records_lock:
                self.records.update(imported)
                try:
                    self._write_index()
                except BaseException:
                    for record in imported.values():
                        del self.records[record.id]
                        self._remove_path(self.payload_path(record))
                    raise

        for failure in failures:
            self.logger.warning(f"Could not import backup {failure['backup']}: {failure['error']}")
        self.logger.info(f"Imported {len(imported)} backup record(s), {skipped} already present")
        return {"imported": len(imported), "skipped": skipped, "failed": len(failures), "failures": failures}

    def _import_payload(self, record: BackupRecord, payload_dir: Path, key: str | None) -> None:
        match = PAYLOAD_NAME_RE.match(record.filename)
        if match is None or match.group("id") != record.id:
            raise IntegrityError(f"Backup '{record.id}' has an unexpected payload name: {record.filename}")

        source = payload_dir / record.filename
        if not source.exists():
            raise NotFoundError(record.id, f"Backup file not found: {source}")

        staging = Path(tempfile.mkdtemp(prefix=f"{record.id}-import-", dir=self.temp_root))
        try:
            staged = staging / record.filename
            if source.is_dir():
                shutil.copytree(source, staged)
            else:
                shutil.copy2(source, staged)
            self._verify_staged(staged, record, key)
            os.replace(staged, self.payload_path(record))
        except OSError as e:
            if isinstance(e, BackupError):
                raise
            raise StorageIOError("import backup payload", source, e) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_payload(self, record: BackupRecord) -> None:
        """Delete a record's payload file or bundle directory"""
        path = self.payload_path(record)
        if not path.exists():
            self.logger.debug(f"Payload already gone: {record.filename}")
            return
        try:
            self._remove_path(path)
        except OSError as e:
            raise StorageIOError("delete payload", path, e) from e

    def drop_records(self, backup_ids: list[str]) -> None:
        """Remove metadata entries and persist the index once"""
        with self._records_lock:
            for backup_id in backup_ids:
                self.records.pop(backup_id, None)
            self._write_index()

    def delete(self, backup_id: str) -> BackupRecord:
        """Delete a backup on explicit request (payload first, then metadata)"""
        record = self.get(backup_id)
        self.delete_payload(record)
        self.drop_records([backup_id])
        self.logger.info(f"Deleted backup {backup_id}")
        return record
