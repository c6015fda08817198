"""Live-storage collaborators: read the current snapshot, apply a restored one"""

import json
import logging
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Protocol

from .errors import IntegrityError, StorageIOError
from .models import Item, Snapshot, parse_rating


class SourceReader(Protocol):
    """Yields the current Snapshot on demand"""

    def read_snapshot(self) -> Snapshot: ...


class SourceWriter(Protocol):
    """Applies a restored Snapshot back to live storage"""

    def write_snapshot(self, snapshot: Snapshot) -> None: ...


class StaticSource:
    """In-memory source, mainly for embedding and tests"""

    def __init__(self, snapshot: Snapshot | None = None):
        self.snapshot = snapshot or Snapshot()

    def read_snapshot(self) -> Snapshot:
        return self.snapshot

    def write_snapshot(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot


class JsonFileSource:
    """Prompt collection stored as a JSON export (``{"prompts": [...], ...}``)"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_snapshot(self) -> Snapshot:
        if not self.path.exists():
            return Snapshot()
        try:
            with open(self.path, encoding="utf-8") as f:
                return Snapshot.from_dict(json.load(f))
        except OSError as e:
            raise StorageIOError("read source", self.path, e) from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Covers malformed JSON and duplicate or missing prompt identifiers
            raise IntegrityError(f"Source {self.path} is not a valid prompt export: {e}") from e

    def write_snapshot(self, snapshot: Snapshot) -> None:
        data = snapshot.to_dict()
        data["prompts"] = data.pop("items")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f".{self.path.name}-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, self.path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageIOError("write source", self.path, e) from e


PROMPT_COLUMNS = ("id", "text", "category", "tags", "rating", "notes", "created_at", "updated_at")

SCHEMA = """
CREATE TABLE IF NOT EXISTS prompts (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    category TEXT,
    tags TEXT,
    rating INTEGER DEFAULT 0,
    notes TEXT DEFAULT '',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS categories (name TEXT PRIMARY KEY);
CREATE TABLE IF NOT EXISTS folders (name TEXT PRIMARY KEY, is_custom BOOLEAN DEFAULT FALSE);
CREATE TABLE IF NOT EXISTS settings (key TEXT PRIMARY KEY, value TEXT);
"""


class SqliteSource:
    """The application's SQLite database (prompts, categories, folders, settings)"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger("SqliteSource")

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as e:
            raise StorageIOError("open database", self.path, e) from e
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the tables if they do not exist"""
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def read_snapshot(self) -> Snapshot:
        if not self.path.exists():
            return Snapshot()

        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM prompts ORDER BY rowid").fetchall()
            items = [self._row_to_item(row) for row in rows]
            categories = [row["name"] for row in conn.execute("SELECT name FROM categories ORDER BY rowid")]
            folders = [
                {"name": row["name"], "isCustom": bool(row["is_custom"])}
                for row in conn.execute("SELECT name, is_custom FROM folders ORDER BY rowid")
            ]
            settings = {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM settings")}
        except sqlite3.Error as e:
            raise StorageIOError("read database", self.path, e) from e
        except ValueError as e:
            raise IntegrityError(f"Database {self.path} holds an invalid prompt row: {e}") from e
        finally:
            conn.close()

        return Snapshot(items=items, categories=categories, folders=folders, settings=settings)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        # Columns outside the model (folder, usage_count, source, ...) ride along in extra
        extra = {
            name: row[name] for name in row.keys() if name not in PROMPT_COLUMNS and not isinstance(row[name], bytes)
        }
        return Item(
            id=row["id"],
            text=row["text"],
            category=row["category"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            rating=parse_rating(row["rating"]),
            notes=row["notes"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            extra=extra,
        )

    def _insert_item(self, conn: sqlite3.Connection, item: Item, table_columns: set[str]) -> None:
        values = {
            "id": item.id,
            "text": item.text,
            "category": item.category,
            "tags": json.dumps(item.tags),
            "rating": item.rating,
            "notes": item.notes,
            "created_at": item.created_at,
            "updated_at": item.updated_at,
        }
        for name, value in item.extra.items():
            if name in values:
                continue
            if name in table_columns:
                values[name] = value
            else:
                self.logger.debug(f"Dropping '{name}' of item {item.id}: no such column in {self.path}")

        columns = ", ".join(f'"{name}"' for name in values)
        placeholders = ", ".join("?" * len(values))
        conn.execute(f"INSERT INTO prompts ({columns}) VALUES ({placeholders})", list(values.values()))

    def write_snapshot(self, snapshot: Snapshot) -> None:
        """Replace the database contents with ``snapshot`` in one transaction

        Prompt columns the model does not know about are written back from
        ``Item.extra`` when the table has them.
        """
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
            table_columns = {row["name"] for row in conn.execute("PRAGMA table_info(prompts)")}
            with conn:
                conn.execute("DELETE FROM prompts")
                for item in snapshot.items:
                    self._insert_item(conn, item, table_columns)
                conn.execute("DELETE FROM categories")
                conn.executemany("INSERT INTO categories (name) VALUES (?)", [(str(c),) for c in snapshot.categories])
                conn.execute("DELETE FROM folders")
                conn.executemany(
                    "INSERT INTO folders (name, is_custom) VALUES (?, ?)",
                    [
                        (f["name"], bool(f.get("isCustom"))) if isinstance(f, dict) else (str(f), False)
                        for f in snapshot.folders
                    ],
                )
                conn.execute("DELETE FROM settings")
                conn.executemany(
                    "INSERT INTO settings (key, value) VALUES (?, ?)",
                    [(key, value if isinstance(value, str) else json.dumps(value)) for key, value in snapshot.settings.items()],
                )
        except sqlite3.Error as e:
            raise StorageIOError("write database", self.path, e) from e
        finally:
            conn.close()
        self.logger.info(f"Applied snapshot with {snapshot.item_count} items to {self.path}")
