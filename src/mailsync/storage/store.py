"""SQLite-backed message metadata store."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from email.parser import BytesHeaderParser
from email.policy import compat32
from pathlib import Path
from typing import Any

from mailsync.core.dates import DateTimeNormalizer
from mailsync.core.exceptions import PersistenceError
from mailsync.core.models import Flag, MessageMetadata, PersistedRow
from mailsync.core.text import decode_words

logger = logging.getLogger(__name__)


def _encode_flags(flags: frozenset[Flag]) -> str:
    return json.dumps(sorted(flag.value for flag in flags))


def _decode_flags(value: str | None) -> frozenset[Flag]:
    if not value:
        return frozenset()
    return frozenset(Flag(v) for v in json.loads(value))


def _decode_date(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _header_text(value: Any) -> str | None:
    if value is None:
        return None
    unfolded = str(value).replace("\r\n", "").replace("\n", "")
    return decode_words(unfolded.strip())


class MetadataStore:
    """Stores one row per message, keyed by uid once it is known.

    Tables:
    - messages: uid/change_version (NULL for rows imported without them),
      flags, date, subject, message-id, sender, raw source
    - sync_runs: audit log of retrieval runs
    """

    def __init__(self, db_path: Path, normalizer: DateTimeNormalizer | None = None) -> None:
        self._db_path = db_path
        self._normalizer = normalizer or DateTimeNormalizer()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MetadataStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uid INTEGER UNIQUE,
                change_version INTEGER,
                flags TEXT NOT NULL DEFAULT '[]',
                date TEXT,
                subject TEXT,
                message_id TEXT,
                sender TEXT,
                raw BLOB,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_message_id ON messages(message_id);
            CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date);

            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                mailbox TEXT NOT NULL,
                stage TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                records_completed INTEGER DEFAULT 0,
                messages_stored INTEGER DEFAULT 0,
                messages_failed INTEGER DEFAULT 0,
                messages_malformed INTEGER DEFAULT 0
            );
        """)

    def upsert_message(self, meta: MessageMetadata) -> None:
        """Insert a record, or update the row with the same uid.

        A stored row with a higher change_version is left untouched. Fields
        the record lacks (e.g. raw source on a metadata-only fetch) keep their
        stored values.

        Raises:
            PersistenceError: If the write fails.
        """
        now = datetime.now(UTC).isoformat()
        try:
            self.conn.execute(
                """INSERT INTO messages
                   (uid, change_version, flags, date, subject, message_id, sender, raw,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(uid) DO UPDATE SET
                       change_version = excluded.change_version,
                       flags = excluded.flags,
                       date = COALESCE(excluded.date, messages.date),
                       subject = COALESCE(excluded.subject, messages.subject),
                       message_id = COALESCE(excluded.message_id, messages.message_id),
                       sender = COALESCE(excluded.sender, messages.sender),
                       raw = COALESCE(excluded.raw, messages.raw),
                       updated_at = excluded.updated_at
                   WHERE excluded.change_version >= messages.change_version""",
                (
                    meta.uid,
                    meta.change_version,
                    _encode_flags(meta.flags),
                    meta.date.isoformat() if meta.date else None,
                    meta.subject,
                    meta.message_id,
                    meta.sender,
                    meta.raw,
                    now,
                    now,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Failed to store uid {meta.uid}: {e}") from e

    def insert_unkeyed(
        self,
        *,
        message_id: str | None = None,
        date: datetime | None = None,
        subject: str | None = None,
        sender: str | None = None,
        raw: bytes | None = None,
    ) -> int:
        """Insert a row that has no uid yet, e.g. from an archive import.

        Returns the new row id.
        """
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.execute(
            """INSERT INTO messages
               (date, subject, message_id, sender, raw, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (date.isoformat() if date else None, subject, message_id, sender, raw, now, now),
        )
        self.conn.commit()
        return cursor.lastrowid or 0

    def get_unkeyed_rows(self) -> list[PersistedRow]:
        """Rows still lacking a uid, with missing fields filled from raw headers."""
        rows = self.conn.execute(
            "SELECT id, date, subject, message_id, sender, raw FROM messages "
            "WHERE uid IS NULL ORDER BY id"
        ).fetchall()
        return [self._to_persisted_row(row) for row in rows]

    def _to_persisted_row(self, row: sqlite3.Row) -> PersistedRow:
        date = _decode_date(row["date"])
        subject = row["subject"]
        message_id = row["message_id"]
        sender = row["sender"]

        if row["raw"] and (date is None or subject is None or message_id is None or sender is None):
            headers = BytesHeaderParser(policy=compat32).parsebytes(bytes(row["raw"]))
            if date is None and headers["date"]:
                date = self._normalizer.normalize(str(headers["date"]))
                if date is None:
                    logger.warning("Unparsable date %r for row %d", headers["date"], row["id"])
            if subject is None:
                subject = _header_text(headers["subject"])
            if message_id is None:
                message_id = _header_text(headers["message-id"])
            if sender is None:
                sender = _header_text(headers["from"])

        return PersistedRow(
            id=row["id"],
            message_id=message_id,
            date=date,
            subject=subject,
            sender=sender,
        )

    def assign_uid(self, row_id: int, uid: int, change_version: int) -> bool:
        """Backfill uid/change_version on a row that has none.

        Returns True if the row was updated; False if it already had a uid or
        the uid belongs to another row.
        """
        now = datetime.now(UTC).isoformat()
        try:
            cursor = self.conn.execute(
                "UPDATE messages SET uid = ?, change_version = ?, updated_at = ? "
                "WHERE id = ? AND uid IS NULL",
                (uid, change_version, now, row_id),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            logger.error("uid %d already assigned elsewhere: %s", uid, e)
            return False
        return cursor.rowcount == 1

    def get_message(self, uid: int) -> dict[str, Any] | None:
        """Get a stored message by uid, with flags and date decoded."""
        row = self.conn.execute("SELECT * FROM messages WHERE uid = ?", (uid,)).fetchone()
        if row is None:
            return None
        record = dict(row)
        record["flags"] = _decode_flags(record["flags"])
        record["date"] = _decode_date(record["date"])
        return record

    def recent_messages(self, limit: int = 100) -> list[MessageMetadata]:
        """Newest stored messages by uid, without raw source.

        ``seq`` is 0 since the records do not come from a session.
        """
        rows = self.conn.execute(
            "SELECT uid, change_version, flags, date, subject, message_id, sender "
            "FROM messages WHERE uid IS NOT NULL ORDER BY uid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            MessageMetadata(
                seq=0,
                uid=row["uid"],
                change_version=row["change_version"],
                flags=_decode_flags(row["flags"]),
                message_id=row["message_id"],
                date=_decode_date(row["date"]),
                subject=row["subject"],
                sender=row["sender"],
            )
            for row in rows
        ]

    def keyed_uids(self) -> set[int]:
        """All uids currently stored."""
        rows = self.conn.execute("SELECT uid FROM messages WHERE uid IS NOT NULL").fetchall()
        return {row["uid"] for row in rows}

    def max_uid(self) -> int:
        """Highest stored uid, or 0 when none is stored."""
        row = self.conn.execute("SELECT MAX(uid) AS max_uid FROM messages").fetchone()
        return row["max_uid"] or 0

    def count_messages(self) -> dict[str, int]:
        """Count rows with and without a uid."""
        row = self.conn.execute(
            "SELECT COUNT(uid) AS keyed, COUNT(*) - COUNT(uid) AS unkeyed FROM messages"
        ).fetchone()
        return {"keyed": row["keyed"], "unkeyed": row["unkeyed"]}

    def start_run(self, mailbox: str, stage: str) -> int:
        """Record the start of a sync run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.execute(
            "INSERT INTO sync_runs (mailbox, stage, started_at) VALUES (?, ?, ?)",
            (mailbox, stage, now),
        )
        self.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(
        self,
        run_id: int,
        records_completed: int = 0,
        messages_stored: int = 0,
        messages_failed: int = 0,
        messages_malformed: int = 0,
    ) -> None:
        """Record the completion of a sync run."""
        now = datetime.now(UTC).isoformat()
        self.conn.execute(
            """UPDATE sync_runs SET
               completed_at = ?, records_completed = ?, messages_stored = ?,
               messages_failed = ?, messages_malformed = ?
               WHERE run_id = ?""",
            (now, records_completed, messages_stored, messages_failed, messages_malformed, run_id),
        )
        self.conn.commit()
