"""
Shared fixtures for the PromptVault test suite.

Everything runs against temp directories and in-memory sources, so no
real prompt collection or key material is touched.
"""

import copy

import pytest

from promptvault.core.backup_engine import BackupEngine
from promptvault.core.config_manager import ConfigManager
from promptvault.core.diff_engine import DiffEngine
from promptvault.core.integrity import IntegrityVerifier
from promptvault.core.models import Item, Snapshot
from promptvault.core.restore import RestoreOrchestrator
from promptvault.core.snapshot_store import SnapshotStore
from promptvault.core.sources import StaticSource
from promptvault.core.transforms import TransformPipeline

TEST_PASSPHRASE = "correct horse battery staple"


# ---------------------------------------------------------------------------
# Snapshot fixtures
# ---------------------------------------------------------------------------


def make_item(item_id: str, text: str | None = None, **fields) -> Item:
    """Build an Item with sensible defaults."""
    return Item(
        id=item_id,
        text=text or f"Prompt {item_id}",
        category=fields.pop("category", "general"),
        tags=fields.pop("tags", ["test"]),
        rating=fields.pop("rating", 3),
        notes=fields.pop("notes", ""),
        created_at=fields.pop("created_at", "2024-01-01T00:00:00"),
        updated_at=fields.pop("updated_at", "2024-01-01T00:00:00"),
    )


def make_snapshot(count: int = 3) -> Snapshot:
    return Snapshot(
        items=[make_item(f"p{i}") for i in range(1, count + 1)],
        categories=["general", "coding"],
        folders=[{"name": "Inbox", "isCustom": False}],
        settings={"theme": "dark"},
    )


@pytest.fixture
def sample_snapshot():
    """A small collection of three prompts."""
    return make_snapshot(3)


@pytest.fixture
def changed_snapshot(sample_snapshot):
    """sample_snapshot with one edit, one removal and one addition."""
    snapshot = copy.deepcopy(sample_snapshot)
    snapshot.items[0].text = "Edited prompt"
    snapshot.items[0].tags = ["test", "edited"]
    snapshot.items = [item for item in snapshot.items if item.id != "p2"]
    snapshot.items.append(make_item("p4", "Brand new prompt"))
    return snapshot


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    """Never pick up a real passphrase from the developer's environment."""
    monkeypatch.delenv("PROMPTVAULT_BACKUP_KEY", raising=False)


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def store(backup_dir):
    """A SnapshotStore wired to a restore orchestrator for change-set bases."""
    snapshot_store = SnapshotStore(
        backup_dir,
        pipeline=TransformPipeline(),
        verifier=IntegrityVerifier(),
        diff_engine=DiffEngine(),
    )
    restorer = RestoreOrchestrator(snapshot_store)
    snapshot_store.base_loader = restorer.load_snapshot
    return snapshot_store


@pytest.fixture
def restorer(store):
    return RestoreOrchestrator(store)


@pytest.fixture
def make_settings(tmp_path):
    """Factory for engine settings rooted in tmp_path."""

    def _make(**overrides):
        settings = {
            "storage": {"backup_dir": str(tmp_path / "backups")},
            "backup": {"compress": True, "encrypt": False},
        }
        for section, values in overrides.items():
            settings.setdefault(section, {}).update(values)
        return settings

    return _make


@pytest.fixture
def make_engine(tmp_path, make_settings):
    """Factory for a BackupEngine over an in-memory source."""

    def _make(snapshot=None, **overrides):
        config = ConfigManager(config_dir=tmp_path / "config", settings=make_settings(**overrides))
        source = StaticSource(snapshot if snapshot is not None else make_snapshot(3))
        return BackupEngine(config, source=source, setup_logging=False)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
