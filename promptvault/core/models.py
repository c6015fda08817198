"""Data model for snapshots, backup records and change sets"""

import copy
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import BackupTimeoutError

# Fields compared when deciding whether an item was modified
DIFF_FIELDS = ("text", "category", "tags", "rating", "notes", "updated_at")

# Every other field that must survive a diff and replay
CARRIED_FIELDS = ("created_at", "extra")

# Auxiliary collections carried alongside the items
AUXILIARY_FIELDS = ("categories", "folders", "settings")

# Keys of an item mapping that Item models directly; anything else lands in Item.extra
ITEM_KEYS = frozenset(
    ("id", "text", "category", "tags", "rating", "notes", "createdAt", "created_at", "updatedAt", "updated_at")
)

HASH_STAGE_SERIALIZED = "serialized"


class BackupType(Enum):
    """Backup record type"""

    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    RESTORE_POINT = "restore-point"

    @property
    def has_full_payload(self) -> bool:
        """True if the payload is a complete snapshot rather than a change set"""
        return self in (BackupType.FULL, BackupType.RESTORE_POINT)


def parse_rating(value: Any) -> int | float:
    """Normalize a rating, keeping fractional values instead of truncating them"""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid rating: {value!r}")
    if isinstance(value, str):
        value = float(value)
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, int):
        return value
    raise ValueError(f"Invalid rating: {value!r}")


@dataclass
class Item:
    """A single prompt in the collection

    Keys or columns the model does not know about (folder, usage_count, ...)
    are kept in ``extra`` and written back unchanged.
    """

    id: str
    text: str
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    rating: int | float = 0
    notes: str = ""
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "text": self.text,
                "category": self.category,
                "tags": list(self.tags),
                "rating": self.rating,
                "notes": self.notes,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Item":
        if not data.get("id"):
            raise ValueError(f"Item without identifier: {data!r}")
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            category=data.get("category"),
            tags=list(data.get("tags") or []),
            rating=parse_rating(data.get("rating")),
            notes=data.get("notes") or "",
            created_at=data.get("createdAt", data.get("created_at")),
            updated_at=data.get("updatedAt", data.get("updated_at")),
            extra={key: value for key, value in data.items() if key not in ITEM_KEYS},
        )

    def get_field(self, name: str) -> Any:
        return getattr(self, name)


@dataclass
class Snapshot:
    """Point-in-time logical copy of the item collection and its metadata"""

    items: list[Item] = field(default_factory=list)
    categories: list[Any] = field(default_factory=list)
    folders: list[Any] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for item in self.items:
            if item.id in seen:
                raise ValueError(f"Duplicate item identifier in snapshot: {item.id}")
            seen.add(item.id)

    @property
    def item_count(self) -> int:
        return len(self.items)

    def ids(self) -> list[str]:
        return [item.id for item in self.items]

    def by_id(self) -> dict[str, Item]:
        return {item.id: item for item in self.items}

    def get_auxiliary(self, name: str) -> Any:
        return getattr(self, name)

    def without_settings(self, keys: list[str]) -> "Snapshot":
        """Copy with the named settings removed (e.g. API keys)"""
        return Snapshot(
            items=copy.deepcopy(self.items),
            categories=copy.deepcopy(self.categories),
            folders=copy.deepcopy(self.folders),
            settings={key: copy.deepcopy(value) for key, value in self.settings.items() if key not in keys},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "categories": self.categories,
            "folders": self.folders,
            "settings": self.settings,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        # The application export calls the item list "prompts"
        raw_items = data.get("items", data.get("prompts", []))
        return cls(
            items=[Item.from_dict(raw) for raw in raw_items],
            categories=list(data.get("categories") or []),
            folders=list(data.get("folders") or []),
            settings=dict(data.get("settings") or {}),
        )

    def serialize(self) -> bytes:
        return canonical_json(self.to_dict())


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for hashing and payloads"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class FieldChange:
    """Old and new value of one item field"""

    old: Any
    new: Any

    def to_dict(self) -> dict[str, Any]:
        return {"old": self.old, "new": self.new}


@dataclass
class ModifiedItem:
    """Updated item paired with its field-level delta"""

    item: Item
    delta: dict[str, FieldChange]

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "delta": {name: change.to_dict() for name, change in self.delta.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModifiedItem":
        return cls(
            item=Item.from_dict(data["item"]),
            delta={name: FieldChange(c["old"], c["new"]) for name, c in data.get("delta", {}).items()},
        )


@dataclass
class ChangeSet:
    """Differences between two snapshots, keyed by item identifier"""

    added: list[Item] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[ModifiedItem] = field(default_factory=list)
    # Identifier order of the new snapshot, only when replay would not produce it
    order: list[str] | None = None
    # Auxiliary collections that changed, replaced wholesale on replay
    auxiliary: dict[str, Any] = field(default_factory=dict)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    @property
    def is_empty(self) -> bool:
        return self.total_changes == 0 and self.order is None and not self.auxiliary

    def summary(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
            "total": self.total_changes,
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "added": [item.to_dict() for item in self.added],
            "removed": list(self.removed),
            "modified": [mod.to_dict() for mod in self.modified],
            "auxiliary": self.auxiliary,
        }
        if self.order is not None:
            data["order"] = list(self.order)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeSet":
        return cls(
            added=[Item.from_dict(raw) for raw in data.get("added", [])],
            removed=list(data.get("removed", [])),
            modified=[ModifiedItem.from_dict(raw) for raw in data.get("modified", [])],
            order=data.get("order"),
            auxiliary=dict(data.get("auxiliary") or {}),
        )

    def serialize(self) -> bytes:
        return canonical_json(self.to_dict())


@dataclass
class ManifestEntry:
    """One materialized component of a multi-component backup"""

    type: str
    path: str
    size_bytes: int
    sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "path": self.path, "sizeBytes": self.size_bytes, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        return cls(
            type=data["type"],
            path=data["path"],
            size_bytes=int(data["sizeBytes"]),
            sha256=data.get("sha256"),
        )


@dataclass
class Manifest:
    """Enumerates the components of a multi-component backup"""

    items: list[ManifestEntry] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(entry.size_bytes for entry in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"items": [entry.to_dict() for entry in self.items]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(items=[ManifestEntry.from_dict(raw) for raw in data.get("items", [])])


@dataclass
class BackupRecord:
    """Immutable metadata describing one persisted backup"""

    id: str
    type: BackupType
    created_at: datetime
    size_bytes: int
    content_hash: str
    compressed: bool
    encrypted: bool
    filename: str
    base_backup_id: str | None = None
    description: str = ""
    item_count: int = 0
    snapshot_hash: str | None = None
    hash_stage: str = HASH_STAGE_SERIALIZED
    transforms: list[str] = field(default_factory=list)
    kdf_salt: str | None = None
    trigger: str = "manual"
    manifest: Manifest | None = None

    def age_days(self, now: datetime | None = None) -> float:
        return ((now or datetime.now()) - self.created_at).total_seconds() / 86400

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "createdAt": self.created_at.isoformat(),
            "sizeBytes": self.size_bytes,
            "contentHash": self.content_hash,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "description": self.description,
            "itemCount": self.item_count,
            "filename": self.filename,
            "snapshotHash": self.snapshot_hash,
            "hashStage": self.hash_stage,
            "transforms": list(self.transforms),
            "trigger": self.trigger,
        }
        if self.base_backup_id:
            data["baseBackupId"] = self.base_backup_id
        if self.kdf_salt:
            data["kdfSalt"] = self.kdf_salt
        if self.manifest is not None:
            data["manifest"] = self.manifest.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupRecord":
        manifest = data.get("manifest")
        return cls(
            id=data["id"],
            type=BackupType(data["type"]),
            created_at=datetime.fromisoformat(data["createdAt"]),
            size_bytes=int(data["sizeBytes"]),
            content_hash=data["contentHash"],
            compressed=bool(data["compressed"]),
            encrypted=bool(data["encrypted"]),
            filename=data["filename"],
            base_backup_id=data.get("baseBackupId"),
            description=data.get("description", ""),
            item_count=int(data.get("itemCount", 0)),
            snapshot_hash=data.get("snapshotHash"),
            hash_stage=data.get("hashStage", HASH_STAGE_SERIALIZED),
            transforms=list(data.get("transforms", [])),
            kdf_salt=data.get("kdfSalt"),
            trigger=data.get("trigger", "manual"),
            manifest=Manifest.from_dict(manifest) if manifest else None,
        )


@dataclass
class TypePolicy:
    """Retention limits for one backup type"""

    max_count: int | None = None
    max_age_days: float | None = None


@dataclass
class RetentionPolicy:
    """Per-type retention limits"""

    types: dict[BackupType, TypePolicy] = field(default_factory=dict)
    protect_chains: bool = True

    DEFAULTS = {
        "full": {"max_count": 10, "max_age_days": 90},
        "incremental": {"max_count": 30, "max_age_days": 30},
        "differential": {"max_count": 10, "max_age_days": 30},
        "restore-point": {"max_count": 5, "max_age_days": 14},
    }

    def for_type(self, backup_type: BackupType) -> TypePolicy:
        return self.types.get(backup_type, TypePolicy())

    @classmethod
    def from_settings(cls, settings: dict[str, Any] | None) -> "RetentionPolicy":
        """Build a policy from the ``retention`` settings section, filling in defaults"""
        settings = settings or {}
        types = {}
        for type_name, defaults in cls.DEFAULTS.items():
            configured = settings.get(type_name) or {}
            types[BackupType(type_name)] = TypePolicy(
                max_count=configured.get("max_count", defaults["max_count"]),
                max_age_days=configured.get("max_age_days", defaults["max_age_days"]),
            )
        return cls(types=types, protect_chains=bool(settings.get("protect_chains", True)))


@dataclass
class BackupOptions:
    """Options accepted by create_backup"""

    description: str | None = None
    base_backup_id: str | None = None
    compress: bool | None = None
    encrypt: bool | None = None
    encryption_key: str | None = None
    timeout: float | None = None
    trigger: str = "manual"
    # Strip backup.sensitive_settings from the snapshot (defaults to backup.exclude_sensitive)
    exclude_sensitive: bool | None = None
    # Write nothing when an incremental/differential change set would be empty
    skip_unchanged: bool = False


@dataclass
class RestoreOptions:
    """Options accepted by restore"""

    skip_safety_backup: bool = False
    decryption_key: str | None = None
    timeout: float | None = None


@dataclass
class RestoreResult:
    """Reconstructed snapshot plus the safety backup taken before it was returned"""

    backup_id: str
    snapshot: Snapshot
    chain: list[str]
    restore_point: BackupRecord | None = None


@dataclass
class VerificationResult:
    """Outcome of verify_backup"""

    backup_id: str
    valid: bool
    issues: list[str] = field(default_factory=list)


class Deadline:
    """Time ceiling checked at stage boundaries of a backup or restore"""

    def __init__(self, timeout: float | None, operation: str = "operation"):
        self.timeout = timeout
        self.operation = operation
        self.started = time.monotonic()

    def remaining(self) -> float | None:
        if self.timeout is None:
            return None
        return self.timeout - (time.monotonic() - self.started)

    def check(self, stage: str) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise BackupTimeoutError(f"{self.operation} exceeded {self.timeout}s timeout during {stage}")
