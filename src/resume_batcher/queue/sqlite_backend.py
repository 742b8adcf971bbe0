"""SQLite implementation of SnapshotStore.

This module provides the local, crash-safe snapshot store using:
- sqlite-utils for schema management and queries
- WAL mode for better concurrent performance
- One transaction per save (insert + prune)
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlite_utils import Database

from ..exceptions import PersistenceError
from .backends import SnapshotStore
from .models import QueueSnapshot

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    saved_at TEXT NOT NULL,
    queued_items INTEGER NOT NULL DEFAULT 0,
    retry_items INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_snapshots_saved ON queue_snapshots(saved_at);
"""


class SQLiteSnapshotStore(SnapshotStore):
    """SQLite-backed snapshot store keeping the last ``keep`` snapshots."""

    def __init__(self, db_path: str, keep: int = 5):
        """Initialize snapshot database.

        Args:
            db_path: Path to SQLite database file (":memory:" is accepted)
            keep: Number of snapshots retained after each save

        Creates schema if database doesn't exist.
        """
        if keep < 1:
            raise ValueError(f"keep must be >= 1, got {keep}")
        self.keep = keep
        self.db_path = db_path

        try:
            if db_path == ":memory:":
                # One connection shared across threads; access is serialized by the queue lock
                self.db = Database(sqlite3.connect(":memory:", check_same_thread=False))
            else:
                path = Path(db_path)
                path.parent.mkdir(parents=True, exist_ok=True)
                self.db = Database(sqlite3.connect(str(path), check_same_thread=False))
                # Enable WAL mode for better concurrent performance
                self.db.conn.execute("PRAGMA journal_mode=WAL")
                self.db.conn.execute("PRAGMA synchronous=NORMAL")
                self.db.conn.commit()

            self.db.executescript(SCHEMA_SQL)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open snapshot store at {db_path}: {e}") from e

    def save_snapshot(self, snapshot: QueueSnapshot) -> None:
        row = {
            "saved_at": snapshot.saved_at.isoformat(),
            "queued_items": sum(len(items) for items in snapshot.tiers.values()),
            "retry_items": len(snapshot.retry_pending),
            "data": snapshot.model_dump_json(),
        }
        try:
            with self.db.conn:
                self.db.execute(
                    "INSERT INTO queue_snapshots (saved_at, queued_items, retry_items, data) "
                    "VALUES (:saved_at, :queued_items, :retry_items, :data)",
                    row,
                )
                self.db.execute(
                    """
                    DELETE FROM queue_snapshots
                    WHERE id NOT IN (
                        SELECT id FROM queue_snapshots ORDER BY id DESC LIMIT ?
                    )
                    """,
                    [self.keep],
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save snapshot: {e}") from e

    def load_snapshot(self) -> Optional[QueueSnapshot]:
        try:
            rows = list(
                self.db["queue_snapshots"].rows_where(order_by="id desc", limit=1)
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read snapshot: {e}") from e

        if not rows:
            return None

        try:
            return QueueSnapshot.model_validate_json(rows[0]["data"])
        except PydanticValidationError as e:
            raise PersistenceError(f"Snapshot {rows[0]['id']} is unreadable: {e}") from e

    def clear(self) -> None:
        try:
            with self.db.conn:
                self.db.execute("DELETE FROM queue_snapshots")
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear snapshots: {e}") from e

    def count(self) -> int:
        """Number of stored snapshots."""
        return self.db["queue_snapshots"].count

    def last_saved_at(self) -> Optional[datetime]:
        rows = list(self.db["queue_snapshots"].rows_where(order_by="id desc", limit=1))
        if not rows:
            return None
        return datetime.fromisoformat(rows[0]["saved_at"])
