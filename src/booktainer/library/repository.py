"""
SQLite persistence for book assets and reading progress.

One connection is shared by the process and guarded by a lock; calls are
short single statements, so they run inline on whichever thread asks.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from booktainer.core.logging import get_logger, info
from booktainer.library.models import (
    BookAsset,
    BookFormat,
    BookStatus,
    ReadingProgress,
    SortKey,
    utcnow_iso,
)

_LOG = get_logger("booktainer.repository")

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id               TEXT PRIMARY KEY,
    owner_id         TEXT NOT NULL,
    title            TEXT NOT NULL,
    author           TEXT,
    source_format    TEXT NOT NULL,
    canonical_format TEXT NOT NULL,
    added_at         TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    original_path    TEXT NOT NULL,
    canonical_path   TEXT,
    cover_path       TEXT,
    status           TEXT NOT NULL CHECK (status IN ('processing', 'ready', 'error')),
    error_message    TEXT
);
CREATE INDEX IF NOT EXISTS idx_books_owner ON books(owner_id, added_at);

CREATE TABLE IF NOT EXISTS progress (
    owner_id      TEXT NOT NULL,
    book_id       TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    location_json TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    PRIMARY KEY (owner_id, book_id)
);
"""

_ORDER_BY = {
    SortKey.DATE_ADDED: "added_at DESC",
    SortKey.TITLE: "casefold(title) ASC, added_at DESC",
    SortKey.AUTHOR: "casefold(author) ASC, added_at DESC",
}


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


class Database:
    """Owns the SQLite connection and the schema."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("casefold", 1, _casefold, deterministic=True)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._migrate(self._conn)
        info(_LOG, "database_connected", path=str(self.db_path))
        return self._conn

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        current = conn.execute("PRAGMA user_version").fetchone()[0]
        if current >= SCHEMA_VERSION:
            return
        conn.executescript(_SCHEMA)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()

    def close(self) -> None:
        with self.lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            return self.connect()
        return self._conn


def _row_to_asset(row: sqlite3.Row) -> BookAsset:
    return BookAsset(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        author=row["author"],
        source_format=BookFormat(row["source_format"]),
        canonical_format=BookFormat(row["canonical_format"]),
        added_at=row["added_at"],
        updated_at=row["updated_at"],
        original_path=row["original_path"],
        canonical_path=row["canonical_path"],
        cover_path=row["cover_path"],
        status=BookStatus(row["status"]),
        error_message=row["error_message"],
    )


class BookRepository:
    """Per-owner CRUD on book records. Every read and write is scoped by owner."""

    def __init__(self, db: Database):
        self._db = db

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._db.lock:
            cur = self._db.conn.execute(sql, params)
            self._db.conn.commit()
            return cur

    def get(self, owner_id: str, book_id: str) -> Optional[BookAsset]:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT * FROM books WHERE id = ? AND owner_id = ?", (book_id, owner_id)
            ).fetchone()
        return _row_to_asset(row) if row else None

    def insert(self, asset: BookAsset) -> None:
        self._execute(
            """INSERT INTO books (id, owner_id, title, author, source_format, canonical_format,
                   added_at, updated_at, original_path, canonical_path, cover_path, status, error_message)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                asset.id,
                asset.owner_id,
                asset.title,
                asset.author,
                asset.source_format.value,
                asset.canonical_format.value,
                asset.added_at,
                asset.updated_at,
                asset.original_path,
                asset.canonical_path,
                asset.cover_path,
                asset.status.value,
                asset.error_message,
            ),
        )

    def update_status(
        self,
        owner_id: str,
        book_id: str,
        status: BookStatus,
        error_message: Optional[str] = None,
        canonical_path: Optional[str] = None,
    ) -> None:
        self._execute(
            """UPDATE books SET status = ?, error_message = ?, canonical_path = ?, updated_at = ?
               WHERE id = ? AND owner_id = ?""",
            (status.value, error_message, canonical_path, utcnow_iso(), book_id, owner_id),
        )

    def update_metadata(self, owner_id: str, book_id: str, title: str, author: Optional[str]) -> None:
        self._execute(
            "UPDATE books SET title = ?, author = ?, updated_at = ? WHERE id = ? AND owner_id = ?",
            (title, author, utcnow_iso(), book_id, owner_id),
        )

    def update_cover(self, owner_id: str, book_id: str, cover_path: Optional[str]) -> None:
        self._execute(
            "UPDATE books SET cover_path = ?, updated_at = ? WHERE id = ? AND owner_id = ?",
            (cover_path, utcnow_iso(), book_id, owner_id),
        )

    def list(self, owner_id: str, sort: SortKey = SortKey.DATE_ADDED, query: Optional[str] = None) -> List[BookAsset]:
        sql = "SELECT * FROM books WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if query:
            needle = query.casefold()
            sql += " AND (instr(casefold(title), ?) > 0 OR instr(casefold(coalesce(author, '')), ?) > 0)"
            params.extend([needle, needle])
        sql += f" ORDER BY {_ORDER_BY[sort]}"
        with self._db.lock:
            rows = self._db.conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_asset(r) for r in rows]

    def delete(self, owner_id: str, book_id: str) -> bool:
        cur = self._execute("DELETE FROM books WHERE id = ? AND owner_id = ?", (book_id, owner_id))
        return cur.rowcount > 0


class ProgressRepository:
    def __init__(self, db: Database):
        self._db = db

    def get(self, owner_id: str, book_id: str) -> Optional[ReadingProgress]:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT * FROM progress WHERE owner_id = ? AND book_id = ?", (owner_id, book_id)
            ).fetchone()
        if not row:
            return None
        return ReadingProgress(
            owner_id=row["owner_id"],
            book_id=row["book_id"],
            location=json.loads(row["location_json"]),
            updated_at=row["updated_at"],
        )

    def upsert(self, owner_id: str, book_id: str, location: Dict[str, Any]) -> ReadingProgress:
        progress = ReadingProgress(owner_id=owner_id, book_id=book_id, location=location)
        with self._db.lock:
            self._db.conn.execute(
                """INSERT INTO progress (owner_id, book_id, location_json, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(owner_id, book_id) DO UPDATE SET
                       location_json = excluded.location_json,
                       updated_at = excluded.updated_at""",
                (owner_id, book_id, json.dumps(location), progress.updated_at),
            )
            self._db.conn.commit()
        return progress
