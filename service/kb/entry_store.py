"""
Entry Store - SQLite WAL Mode
Durable, per-bot question/answer entries; the corpus training consumes.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, List

import config as service_config
from kb.errors import NotFoundError, StorageError, ValidationError
from kb.models import Entry, validate_entry

log = logging.getLogger(__name__)


class EntryStore:
    """
    Persistent entry storage shared by all bots, rows keyed by (bot_id, id).

    ``seq`` is an autoincrement column so fetch() returns entries in
    insertion order; updating an entry keeps its original position.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = (
            Path(db_path).expanduser()
            if db_path is not None
            else service_config.ENTRIES_DB_PATH
        )
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._get_conn() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    bot_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT '',
                    source TEXT NOT NULL DEFAULT '',
                    question TEXT NOT NULL,
                    answer TEXT NOT NULL,
                    UNIQUE (bot_id, id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_entries_bot_seq
                ON entries(bot_id, seq)
            """)
            conn.commit()

    @contextmanager
    def _get_conn(self):
        """Open a connection, translating sqlite failures into StorageError."""
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open entry store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.rollback()
            log.error("Entry store operation failed: %s", exc, exc_info=True)
            raise StorageError(f"Entry store failure: {exc}") from exc
        finally:
            conn.close()

    def fetch(self, bot_id: str) -> List[Entry]:
        """Return every entry of the bot in insertion order (possibly empty)."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM entries WHERE bot_id = ? ORDER BY seq ASC",
                (bot_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get(self, bot_id: str, entry_id: str) -> Entry:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM entries WHERE bot_id = ? AND id = ?",
                (bot_id, entry_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Entry '{entry_id}' not found")
        return self._row_to_entry(row)

    def count(self, bot_id: str) -> int:
        with self._get_conn() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM entries WHERE bot_id = ?", (bot_id,)
            ).fetchone()[0]

    def upsert(self, bot_id: str, payload: Any) -> str:
        """Create or update an entry; returns its id.

        Validation happens before the connection is opened so a rejected
        payload never reaches the database.
        """
        result = validate_entry(payload)
        if not result.ok or result.entry is None:
            raise ValidationError("Invalid entry", details=result.errors)
        entry = result.entry

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO entries (bot_id, id, type, source, question, answer)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (bot_id, id) DO UPDATE SET
                    type = excluded.type,
                    source = excluded.source,
                    question = excluded.question,
                    answer = excluded.answer
            """, (bot_id, entry.id, entry.type, entry.source, entry.question, entry.answer))
            conn.commit()

        log.debug("Entry %s upserted for bot %s", entry.id, bot_id)
        return entry.id

    def delete(self, bot_id: str, entry_id: str) -> None:
        """Delete one entry. Deleting an unknown (or already deleted) id is an error."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE bot_id = ? AND id = ?",
                (bot_id, entry_id),
            )
            conn.commit()
            deleted = cursor.rowcount
        if not deleted:
            raise NotFoundError(f"Entry '{entry_id}' not found")
        log.debug("Entry %s deleted for bot %s", entry_id, bot_id)

    def bot_ids(self) -> List[str]:
        """Bots that currently own at least one entry."""
        with self._get_conn() as conn:
            rows = conn.execute("SELECT DISTINCT bot_id FROM entries ORDER BY bot_id").fetchall()
        return [row[0] for row in rows]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Entry:
        return Entry(
            id=row["id"],
            type=row["type"],
            source=row["source"],
            question=row["question"],
            answer=row["answer"],
        )
