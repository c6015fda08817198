"""Tests for the BackupEngine facade and its operation guard."""

import copy
import logging
import threading
from logging.handlers import RotatingFileHandler

import pytest

from promptvault.core.backup_engine import COMPONENT_LOGGERS, BackupEngine, OperationGuard
from promptvault.core.config_manager import ConfigManager
from promptvault.core.errors import BackupTimeoutError, ConfigurationError, IntegrityError, NotFoundError
from promptvault.core.models import BackupOptions, BackupType, Deadline, RestoreOptions
from promptvault.core.snapshot_store import INDEX_FILENAME, TEMP_DIRNAME
from promptvault.core.sources import JsonFileSource, SqliteSource, StaticSource

from .conftest import TEST_PASSPHRASE, make_item, make_snapshot


def test_full_then_incremental(engine, changed_snapshot):
    """Full backup of 3 items, add 1, incremental: only the addition is stored."""
    full = engine.create_backup(backup_type="full")
    live = copy.deepcopy(engine.source.snapshot)
    live.items.append(make_item("p4"))
    engine.source.snapshot = live

    incremental = engine.create_backup(backup_type="incremental")

    assert full.item_count == 3
    assert incremental.base_backup_id == full.id
    assert incremental.item_count == 4
    change_set = engine.restorer.store.load_payload(incremental)
    assert b'"added":[{' in change_set
    assert b'"removed":[]' in change_set
    assert b'"modified":[]' in change_set
    assert engine.restore(incremental.id, RestoreOptions(skip_safety_backup=True)).snapshot == live


def test_explicit_snapshot_overrides_source(engine, changed_snapshot):
    record = engine.create_backup(changed_snapshot, "full")

    assert record.item_count == changed_snapshot.item_count


def test_backup_without_source_or_snapshot(tmp_path, make_settings):
    engine = BackupEngine(ConfigManager(tmp_path / "config", settings=make_settings()), setup_logging=False)

    with pytest.raises(ConfigurationError, match="no live source"):
        engine.create_backup()


def test_options_timeout_must_be_positive(engine):
    with pytest.raises(ConfigurationError, match="positive"):
        engine.create_backup(options=BackupOptions(timeout=0))


def test_timeout_leaves_no_artifacts(engine, monkeypatch):
    original_check = Deadline.check

    def expire_at_verify(self, stage):
        if stage == "verify":
            raise BackupTimeoutError(f"{self.operation} exceeded {self.timeout}s timeout during {stage}")
        original_check(self, stage)

    monkeypatch.setattr(Deadline, "check", expire_at_verify)

    with pytest.raises(BackupTimeoutError):
        engine.create_backup(options=BackupOptions(timeout=30))

    assert engine.list_backups() == []
    assert list((engine.backup_dir / TEMP_DIRNAME).iterdir()) == []
    assert not (engine.backup_dir / INDEX_FILENAME).exists()


def test_verify_valid_and_flipped_byte(engine):
    record = engine.create_backup()
    assert engine.verify_backup(record.id).valid

    path = engine.backup_dir / record.filename
    data = bytearray(path.read_bytes())
    data[-5] ^= 0x01
    path.write_bytes(bytes(data))

    result = engine.verify_backup(record.id)
    assert not result.valid
    assert result.issues


def test_verify_missing_payload(engine):
    record = engine.create_backup()
    (engine.backup_dir / record.filename).unlink()

    result = engine.verify_backup(record.id)

    assert not result.valid
    assert "Payload not found" in result.issues[0]


def test_verify_broken_chain(engine):
    full = engine.create_backup()
    engine.source.snapshot.items.append(make_item("p9"))
    incremental = engine.create_backup(backup_type="incremental")
    engine.store.delete(full.id)

    result = engine.verify_backup(incremental.id)

    assert not result.valid
    assert any("broken" in issue for issue in result.issues)


def test_verify_unknown(engine):
    with pytest.raises(NotFoundError):
        engine.verify_backup("backup_0_unknown")


def test_encrypted_engine_generates_key_file(make_engine, tmp_path):
    engine = make_engine(backup={"encrypt": True})
    key_file = tmp_path / "config" / ".encryption_key"

    record = engine.create_backup()

    assert key_file.exists()
    assert key_file.stat().st_mode & 0o777 == 0o600
    assert record.encrypted
    assert engine.verify_backup(record.id).valid


def test_encrypted_verify_without_key(make_engine, monkeypatch):
    monkeypatch.setenv("PROMPTVAULT_BACKUP_KEY", TEST_PASSPHRASE)
    engine = make_engine(backup={"encrypt": True})
    record = engine.create_backup()
    engine.encryption_key = None

    with pytest.raises(ConfigurationError):
        engine.verify_backup(record.id)
    assert engine.verify_backup(record.id, decryption_key=TEST_PASSPHRASE).valid


def test_retention_runs_after_backup(make_engine):
    engine = make_engine(retention={"full": {"max_count": 2}})

    records = [engine.create_backup() for _ in range(4)]

    assert [r.id for r in engine.list_backups()] == [records[3].id, records[2].id]


def test_restore_through_engine_creates_restore_point(engine):
    record = engine.create_backup()
    engine.source.snapshot.items[0].text = "changed live"

    result = engine.restore(record.id)

    assert result.snapshot.items[0].text == "Prompt p1"
    assert result.restore_point is not None
    assert engine.list_backups(BackupType.RESTORE_POINT)[0].id == result.restore_point.id
    # The engine never writes live storage itself
    assert engine.source.snapshot.items[0].text == "changed live"


def test_statistics_and_export(engine):
    engine.create_backup()
    engine.create_backup(backup_type="incremental")

    stats = engine.get_backup_statistics()
    history = engine.export_backup_history()

    assert stats["total_backups"] == 2
    assert stats["type_breakdown"] == {"full": 1, "incremental": 1}
    assert stats["compression_enabled"] is True
    assert len(history["history"]) == 2
    assert history["history"][0]["type"] == "incremental"
    assert "exportedAt" in history


def test_default_source_prefers_sqlite(tmp_path, make_settings):
    json_path = tmp_path / "prompts.json"
    db_path = tmp_path / "prompts.db"
    settings = make_settings(sources={"json_path": str(json_path), "sqlite_path": str(db_path)})
    engine = BackupEngine(ConfigManager(tmp_path / "config", settings=settings), setup_logging=False)

    assert isinstance(engine.source, SqliteSource)
    assert [a.method for a in engine.store.attachments] == ["sqlite"]

    settings = make_settings(sources={"json_path": str(json_path)})
    engine = BackupEngine(ConfigManager(tmp_path / "config", settings=settings), setup_logging=False)
    assert isinstance(engine.source, JsonFileSource)


def test_sqlite_source_end_to_end(tmp_path, make_settings, sample_snapshot):
    db_path = tmp_path / "prompts.db"
    SqliteSource(db_path).write_snapshot(sample_snapshot)
    settings = make_settings(sources={"sqlite_path": str(db_path)})
    engine = BackupEngine(ConfigManager(tmp_path / "config", settings=settings), setup_logging=False)

    record = engine.create_backup()

    assert record.filename.endswith(".bundle")
    assert [e.type for e in record.manifest.items] == ["snapshot", "database"]
    assert engine.verify_backup(record.id).valid
    assert engine.restore(record.id, RestoreOptions(skip_safety_backup=True)).snapshot == sample_snapshot


def test_incremental_with_added_item_and_new_rating(engine):
    """Full of 3 items, add one and re-rate another, incremental, restore."""
    full = engine.create_backup()
    live = copy.deepcopy(engine.source.snapshot)
    live.items.append(make_item("p4"))
    live.items[1].rating = 5
    engine.source.snapshot = live

    incremental = engine.create_backup(backup_type="incremental")
    restored = engine.restore(incremental.id, RestoreOptions(skip_safety_backup=True)).snapshot

    assert incremental.base_backup_id == full.id
    assert restored.item_count == 4
    assert restored.by_id()["p2"].rating == 5
    assert restored == live


def test_incremental_after_created_at_change_restores(engine):
    engine.create_backup()
    live = copy.deepcopy(engine.source.snapshot)
    live.items[0].created_at = "2023-06-01T12:00:00"
    engine.source.snapshot = live

    incremental = engine.create_backup(backup_type="incremental")

    assert engine.restore(incremental.id, RestoreOptions(skip_safety_backup=True)).snapshot == live


def test_unreplayable_change_set_is_not_published(engine, monkeypatch):
    full = engine.create_backup()
    engine.source.snapshot = copy.deepcopy(engine.source.snapshot)
    engine.source.snapshot.items[0].text = "edited"

    def drop_changes(base, changes):
        return base

    monkeypatch.setattr(engine.diff_engine, "reconstruct", drop_changes)

    with pytest.raises(IntegrityError, match="does not reproduce"):
        engine.create_backup(backup_type="incremental")
    assert [r.id for r in engine.list_backups()] == [full.id]
    assert list((engine.backup_dir / TEMP_DIRNAME).iterdir()) == []


def test_skip_unchanged_writes_nothing(engine):
    full = engine.create_backup()
    options = BackupOptions(skip_unchanged=True)

    assert engine.create_backup(backup_type="incremental", options=options) is None
    assert [r.id for r in engine.list_backups()] == [full.id]

    engine.source.snapshot.items[0].notes = "changed"
    assert engine.create_backup(backup_type="incremental", options=options) is not None


@pytest.fixture
def secret_snapshot():
    snapshot = make_snapshot(3)
    snapshot.settings["openaiApiKey"] = "sk-secret"
    return snapshot


def test_exclude_sensitive_strips_api_key(make_engine, secret_snapshot):
    engine = make_engine(secret_snapshot, backup={"exclude_sensitive": True})

    record = engine.create_backup()
    result = engine.restore(record.id)

    payload = engine.store.load_payload(record)
    assert b"sk-secret" not in payload
    assert b'"theme":"dark"' in payload
    assert b"sk-secret" not in engine.store.load_payload(result.restore_point)
    assert engine.source.snapshot.settings["openaiApiKey"] == "sk-secret"


def test_exclude_sensitive_per_call(make_engine, secret_snapshot):
    engine = make_engine(secret_snapshot)

    kept = engine.create_backup()
    stripped = engine.create_backup(options=BackupOptions(exclude_sensitive=True))

    assert b"sk-secret" in engine.store.load_payload(kept)
    assert b"sk-secret" not in engine.store.load_payload(stripped)


@pytest.fixture
def other_engine(tmp_path, make_settings):
    """A second engine with its own, empty backup directory."""
    settings = make_settings(storage={"backup_dir": str(tmp_path / "other-backups")})
    return BackupEngine(ConfigManager(tmp_path / "config", settings=settings), source=StaticSource(), setup_logging=False)


def test_import_history_adopts_chain(engine, other_engine):
    full = engine.create_backup()
    engine.source.snapshot.items.append(make_item("p9"))
    incremental = engine.create_backup(backup_type="incremental")
    history = engine.export_backup_history()

    result = other_engine.import_backup_history(history, payload_dir=engine.backup_dir)

    assert result == {"imported": 2, "skipped": 0, "failed": 0, "failures": []}
    assert {r.id for r in other_engine.list_backups()} == {full.id, incremental.id}
    assert other_engine.verify_backup(incremental.id).valid
    restored = other_engine.restore(incremental.id, RestoreOptions(skip_safety_backup=True)).snapshot
    assert restored.item_count == 4

    again = other_engine.import_backup_history(history, payload_dir=engine.backup_dir)
    assert again["imported"] == 0
    assert again["skipped"] == 2


def test_import_history_reports_bad_entries(engine, other_engine, tmp_path):
    engine.create_backup()
    entry = engine.export_backup_history()["history"][0]
    empty = tmp_path / "empty"
    empty.mkdir()

    result = other_engine.import_backup_history([{"id": "broken"}, entry], payload_dir=empty)

    assert result["imported"] == 0
    assert result["failed"] == 2
    assert "Invalid backup entry" in result["failures"][0]["error"]
    assert "Backup file not found" in result["failures"][1]["error"]

    tampered = dict(entry, contentHash="0" * 64)
    result = other_engine.import_backup_history([tampered], payload_dir=engine.backup_dir)

    assert "Checksum mismatch" in result["failures"][0]["error"]
    assert other_engine.list_backups() == []
    assert list((other_engine.backup_dir / TEMP_DIRNAME).iterdir()) == []


def test_import_history_rejects_non_list(other_engine):
    with pytest.raises(ConfigurationError, match="Invalid backup history"):
        other_engine.import_backup_history({"history": "nope"})


def test_logger_setup_adds_rotating_handler_once(tmp_path, make_settings):
    config = ConfigManager(tmp_path / "config", settings=make_settings())
    loggers = [logging.getLogger(name) for name in COMPONENT_LOGGERS]
    saved = {logger.name: (list(logger.handlers), logger.level) for logger in loggers}
    for logger in loggers:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)

    try:
        BackupEngine(config)
        BackupEngine(config)
        engine_logger = logging.getLogger("BackupEngine")
        assert len(engine_logger.handlers) == 2
        assert any(isinstance(h, RotatingFileHandler) for h in engine_logger.handlers)
        assert engine_logger.level == logging.INFO
        assert (tmp_path / "backups" / "logs").is_dir()
    finally:
        for logger in loggers:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
            handlers, level = saved[logger.name]
            for handler in handlers:
                logger.addHandler(handler)
            logger.setLevel(level)


# ---------------------------------------------------------------------------
# OperationGuard
# ---------------------------------------------------------------------------


def test_guard_try_acquire_refuses_when_busy():
    guard = OperationGuard()

    assert guard.try_acquire("backup")
    assert not guard.try_acquire("backup")
    guard.release()
    assert guard.try_acquire("backup")


def test_guard_hold_times_out():
    guard = OperationGuard()
    guard.try_acquire("backup")

    with pytest.raises(BackupTimeoutError, match="before restore"):
        with guard.hold("restore", timeout=0.05):
            pass


def test_pending_restore_goes_before_waiting_backup():
    guard = OperationGuard()
    guard.try_acquire("backup")
    order = []

    def run(operation):
        with guard.hold(operation, timeout=5):
            order.append(operation)

    restore_thread = threading.Thread(target=run, args=("restore",))
    restore_thread.start()
    while guard._pending_restores == 0:
        threading.Event().wait(0.01)
    # A pending restore also blocks the scheduler's non-blocking path
    assert not guard.try_acquire("backup")

    backup_thread = threading.Thread(target=run, args=("backup",))
    backup_thread.start()
    threading.Event().wait(0.05)
    guard.release()
    restore_thread.join(5)
    backup_thread.join(5)

    assert order == ["restore", "backup"]
