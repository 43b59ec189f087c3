"""SQLite-based document persistence for Grocery Inventory.

This module provides SQLite database storage as an alternative to the
in-memory store. It implements the same interface as MemoryDocumentStore for
seamless switching.
"""

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .document_store import BaseDocumentStore, StoreSession, split_path


class _SQLiteSession(StoreSession):
    def __init__(self, conn: sqlite3.Connection, clock_iso: Callable[[], str]):
        super().__init__()
        self._conn = conn
        self._clock_iso = clock_iso

    def read(self, path: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT data FROM documents WHERE path = ?", (path,)).fetchone()
        if row is None:
            return None
        return json.loads(row["data"])

    def write(self, path: str, data: dict[str, Any]) -> None:
        collection, doc_id = split_path(path)
        self._conn.execute(
            """
            INSERT INTO documents (path, collection, doc_id, data, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (path, collection, doc_id, json.dumps(data), self._clock_iso()),
        )

    def remove(self, path: str) -> None:
        self._conn.execute("DELETE FROM documents WHERE path = ?", (path,))

    def scan(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        rows = self._conn.execute(
            "SELECT path, data FROM documents WHERE collection = ? ORDER BY rowid",
            (collection.strip("/"),),
        ).fetchall()
        return [(row["path"], json.loads(row["data"])) for row in rows]


class SQLiteDocumentStore(BaseDocumentStore):
    """Manages SQLite database persistence for documents."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize SQLite store.

        Args:
            db_path: Path to the SQLite database file. Defaults to ./data/grocery_inventory.db
            clock: Optional clock used for server timestamps
        """
        super().__init__(clock)
        if db_path is None:
            db_path = Path.cwd() / "data" / "grocery_inventory.db"
        self.db_path = db_path
        self._lock = threading.RLock()
        self._ensure_directories()
        self._init_database()

    def _ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup."""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize database schema if not exists."""
        with self._get_connection() as conn:
            conn.executescript("""
                -- Schema version tracking
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                -- Documents keyed by full path
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_documents_collection
                    ON documents(collection);
            """)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    @contextmanager
    def _begin(self) -> Iterator[StoreSession]:
        with self._lock, self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            session = _SQLiteSession(conn, self.now)
            try:
                yield session
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                session.created.clear()
                raise
