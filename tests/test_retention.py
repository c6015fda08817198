"""Tests for per-type retention."""

from datetime import datetime, timedelta

import pytest

from promptvault.core.errors import StorageIOError
from promptvault.core.models import BackupType, RetentionPolicy, TypePolicy
from promptvault.utils.retention_manager import RetentionManager


def _age(store, record, days):
    store.records[record.id].created_at = datetime.now() - timedelta(days=days)


def _policy(protect_chains=True, **limits):
    return RetentionPolicy(
        types={BackupType(name.replace("_", "-")): TypePolicy(**values) for name, values in limits.items()},
        protect_chains=protect_chains,
    )


@pytest.fixture
def retention(store):
    return RetentionManager(store)


def test_newest_full_survives_age_limit(store, retention, sample_snapshot):
    records = [store.create_backup(sample_snapshot, "full") for _ in range(4)]
    for days, record in zip((40, 35, 32, 31), records):
        _age(store, record, days)

    removed = retention.cleanup(_policy(full={"max_age_days": 30}))

    assert [r.id for r in removed] == [r.id for r in records[:3]]
    assert [r.id for r in store.list_records()] == [records[3].id]
    assert not (store.backup_dir / records[0].filename).exists()


def test_max_count_removes_oldest(store, retention, sample_snapshot):
    records = [store.create_backup(sample_snapshot, "full") for _ in range(5)]

    removed = retention.cleanup(_policy(full={"max_count": 2}))

    assert [r.id for r in removed] == [r.id for r in records[:3]]
    assert [r.id for r in store.list_records()] == [records[4].id, records[3].id]


def test_limits_apply_per_type(store, retention, sample_snapshot):
    full = store.create_backup(sample_snapshot, "full")
    points = [store.create_backup(sample_snapshot, "restore-point") for _ in range(3)]

    removed = retention.cleanup(_policy(full={"max_count": 1}, restore_point={"max_count": 1}))

    assert [r.id for r in removed] == [points[0].id, points[1].id]
    assert store.get(full.id) == full


def test_dry_run_deletes_nothing(store, retention, sample_snapshot):
    records = [store.create_backup(sample_snapshot, "full") for _ in range(3)]

    preview = retention.cleanup(_policy(full={"max_count": 1}), dry_run=True)

    assert [r.id for r in preview] == [r.id for r in records[:2]]
    assert len(store.list_records()) == 3
    assert all((store.backup_dir / r.filename).exists() for r in records)


def test_chain_ancestors_are_protected(store, retention, sample_snapshot, changed_snapshot):
    old_full = store.create_backup(sample_snapshot, "full")
    incremental = store.create_backup(changed_snapshot, "incremental")
    newest_full = store.create_backup(changed_snapshot, "full")
    _age(store, old_full, 100)
    _age(store, incremental, 99)

    policy = _policy(full={"max_age_days": 30}, incremental={"max_age_days": 365})
    assert retention.cleanup(policy) == []
    assert store.chain(incremental.id)[0].id == old_full.id

    unprotected = retention.cleanup(_policy(protect_chains=False, full={"max_age_days": 30}))
    assert [r.id for r in unprotected] == [old_full.id]
    assert store.get(newest_full.id) == newest_full


def test_failed_payload_delete_keeps_metadata(store, retention, sample_snapshot, monkeypatch, caplog):
    records = [store.create_backup(sample_snapshot, "full") for _ in range(3)]
    original = store.delete_payload

    def flaky_delete(record):
        if record.id == records[0].id:
            raise StorageIOError("delete payload", store.payload_path(record), PermissionError("read-only"))
        original(record)

    monkeypatch.setattr(store, "delete_payload", flaky_delete)
    removed = retention.cleanup(_policy(full={"max_count": 1}))

    assert [r.id for r in removed] == [records[1].id]
    assert store.get(records[0].id) == records[0]
    assert "Failed to delete" in caplog.text


def test_policy_from_settings_fills_defaults():
    policy = RetentionPolicy.from_settings({"full": {"max_count": 3}, "protect_chains": False})

    assert policy.for_type(BackupType.FULL) == TypePolicy(max_count=3, max_age_days=90)
    assert policy.for_type(BackupType.INCREMENTAL) == TypePolicy(max_count=30, max_age_days=30)
    assert policy.protect_chains is False


def test_retention_status(store, retention, sample_snapshot):
    store.create_backup(sample_snapshot, "full")
    store.create_backup(sample_snapshot, "restore-point")

    status = retention.get_retention_status()

    assert status["total_backups"] == 2
    assert status["types"]["full"]["count"] == 1
    assert status["types"]["restore-point"]["max_count"] == 5
    assert status["pending_removal"] == 0
