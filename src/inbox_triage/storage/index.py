"""SQLite-backed document index for mail records, keyed by UID."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from inbox_triage.core.exceptions import IndexingError
from inbox_triage.core.models import (
    BulkResult,
    ClassifiedRecord,
    MailRecord,
    SearchFilter,
    SearchResult,
)

logger = logging.getLogger(__name__)

IndexableRecord = MailRecord | ClassifiedRecord

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        uid INTEGER PRIMARY KEY,
        sender TEXT NOT NULL DEFAULT '',
        recipient TEXT NOT NULL DEFAULT '',
        subject TEXT NOT NULL DEFAULT '',
        body TEXT NOT NULL DEFAULT '',
        date TEXT NOT NULL,
        folder TEXT NOT NULL DEFAULT '',
        account TEXT NOT NULL DEFAULT '',
        is_read INTEGER NOT NULL DEFAULT 0,
        is_important INTEGER NOT NULL DEFAULT 0,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        message_id TEXT NOT NULL DEFAULT '',
        thread_id TEXT NOT NULL DEFAULT '',
        labels TEXT NOT NULL DEFAULT '[]',
        ai_category TEXT,
        ai_confidence REAL,
        ai_method TEXT,
        ai_reasoning TEXT,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_documents_date ON documents(date);
    CREATE INDEX IF NOT EXISTS idx_documents_folder ON documents(folder);
    CREATE INDEX IF NOT EXISTS idx_documents_account ON documents(account);
    CREATE INDEX IF NOT EXISTS idx_documents_category ON documents(ai_category);
"""

# Header fields only: re-indexing an unclassified record keeps its category.
_UPSERT_HEADERS = """
    INSERT INTO documents
        (uid, sender, recipient, subject, body, date, folder, account, updated_at)
    VALUES (:uid, :sender, :recipient, :subject, :body, :date, :folder, :account, :updated_at)
    ON CONFLICT(uid) DO UPDATE SET
        sender = excluded.sender,
        recipient = excluded.recipient,
        subject = excluded.subject,
        body = excluded.body,
        date = excluded.date,
        folder = excluded.folder,
        account = excluded.account,
        updated_at = excluded.updated_at
"""

_UPSERT_FULL = """
    INSERT INTO documents
        (uid, sender, recipient, subject, body, date, folder, account,
         ai_category, ai_confidence, ai_method, ai_reasoning, updated_at)
    VALUES (:uid, :sender, :recipient, :subject, :body, :date, :folder, :account,
            :ai_category, :ai_confidence, :ai_method, :ai_reasoning, :updated_at)
    ON CONFLICT(uid) DO UPDATE SET
        sender = excluded.sender,
        recipient = excluded.recipient,
        subject = excluded.subject,
        body = excluded.body,
        date = excluded.date,
        folder = excluded.folder,
        account = excluded.account,
        ai_category = excluded.ai_category,
        ai_confidence = excluded.ai_confidence,
        ai_method = excluded.ai_method,
        ai_reasoning = excluded.ai_reasoning,
        updated_at = excluded.updated_at
"""

_UPDATE_CLASSIFICATION = """
    UPDATE documents SET
        ai_category = :ai_category,
        ai_confidence = :ai_confidence,
        ai_method = :ai_method,
        ai_reasoning = :ai_reasoning,
        updated_at = :updated_at
    WHERE uid = :uid
"""

_MAX_PAGE_SIZE = 500


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_params(item: IndexableRecord, now: str) -> dict[str, Any]:
    record = item.record if isinstance(item, ClassifiedRecord) else item
    params: dict[str, Any] = {
        "uid": record.uid,
        "sender": record.sender,
        "recipient": record.to,
        "subject": record.subject,
        "body": record.body,
        "date": _utc_iso(record.date),
        "folder": record.folder,
        "account": record.account,
        "updated_at": now,
    }
    if isinstance(item, ClassifiedRecord):
        params.update(item.classification_fields())
    return params


def _row_to_document(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "uid": row["uid"],
        "from": row["sender"],
        "to": row["recipient"],
        "subject": row["subject"],
        "body": row["body"],
        "date": row["date"],
        "folder": row["folder"],
        "account": row["account"],
        "is_read": bool(row["is_read"]),
        "is_important": bool(row["is_important"]),
        "has_attachments": bool(row["has_attachments"]),
        "message_id": row["message_id"],
        "thread_id": row["thread_id"],
        "labels": json.loads(row["labels"] or "[]"),
        "ai_category": row["ai_category"],
        "ai_confidence": row["ai_confidence"],
        "ai_method": row["ai_method"],
        "ai_reasoning": row["ai_reasoning"],
    }


class MessageIndex:
    """Document store for indexed mail.

    Every write is an upsert keyed by ``uid``, so delivering the same record
    twice updates one document. The connection is shared between the watcher,
    the drain worker and the HTTP API, so access is serialized with a lock.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        if self._db_path != Path(":memory:"):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self.ensure_schema()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MessageIndex:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self.conn.executescript(_SCHEMA)

    # -- writes ---------------------------------------------------------------

    def upsert(self, item: IndexableRecord) -> None:
        """Write one document.

        A plain ``MailRecord`` writes header fields only and leaves any
        existing classification untouched; a ``ClassifiedRecord`` writes the
        whole document.

        Raises:
            IndexingError: If the write fails.
        """
        now = datetime.now(UTC).isoformat()
        sql = _UPSERT_FULL if isinstance(item, ClassifiedRecord) else _UPSERT_HEADERS
        with self._lock:
            try:
                self.conn.execute(sql, _row_params(item, now))
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise IndexingError(f"Failed to index UID {item.uid}: {e}") from e
        logger.debug("Indexed UID %d", item.uid)

    def bulk_upsert(
        self, items: Sequence[IndexableRecord], partial: bool = False
    ) -> BulkResult:
        """Write many documents in one transaction.

        Args:
            items: Records to write.
            partial: When True, only classification fields of existing
                documents are updated; every item must be a ``ClassifiedRecord``
                and a missing document is a per-item failure.

        Returns:
            Per-uid outcome. Individual failures never raise.

        Raises:
            IndexingError: If the transaction as a whole cannot be committed.
        """
        if not items:
            return BulkResult()

        now = datetime.now(UTC).isoformat()
        succeeded: list[int] = []
        failed: dict[int, str] = {}

        with self._lock:
            for item in items:
                try:
                    if partial:
                        if not isinstance(item, ClassifiedRecord):
                            failed[item.uid] = "partial update requires a classified record"
                            continue
                        cursor = self.conn.execute(
                            _UPDATE_CLASSIFICATION, _row_params(item, now)
                        )
                        if cursor.rowcount == 0:
                            failed[item.uid] = "document not found"
                            continue
                    else:
                        sql = (
                            _UPSERT_FULL
                            if isinstance(item, ClassifiedRecord)
                            else _UPSERT_HEADERS
                        )
                        self.conn.execute(sql, _row_params(item, now))
                    succeeded.append(item.uid)
                except sqlite3.Error as e:
                    failed[item.uid] = str(e)

            try:
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise IndexingError(f"Bulk index commit failed: {e}") from e

        for uid, reason in failed.items():
            logger.error("Failed to index UID %d: %s", uid, reason)
        logger.info(
            "Bulk %s: %d indexed, %d failed",
            "update" if partial else "index", len(succeeded), len(failed),
        )
        return BulkResult(succeeded=tuple(succeeded), failed=failed)

    # -- reads ----------------------------------------------------------------

    def get(self, uid: int) -> dict[str, Any] | None:
        """Fetch one document by uid."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM documents WHERE uid = ?", (uid,)
            ).fetchone()
        return _row_to_document(row) if row else None

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def search(self, search_filter: SearchFilter) -> SearchResult:
        """Query documents; hits are ordered newest first."""
        started = time.perf_counter()
        where, params = self._build_where(search_filter)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        size = max(0, min(search_filter.size, _MAX_PAGE_SIZE))
        offset = max(0, search_filter.offset)

        with self._lock:
            total = self.conn.execute(
                f"SELECT COUNT(*) FROM documents {clause}", params
            ).fetchone()[0]
            rows = self.conn.execute(
                f"SELECT * FROM documents {clause} "
                "ORDER BY date DESC, uid DESC LIMIT ? OFFSET ?",
                [*params, size, offset],
            ).fetchall()

        took_ms = int((time.perf_counter() - started) * 1000)
        return SearchResult(
            hits=[_row_to_document(row) for row in rows], total=total, took_ms=took_ms
        )

    @staticmethod
    def _build_where(f: SearchFilter) -> tuple[list[str], list[Any]]:
        where: list[str] = []
        params: list[Any] = []

        if f.query:
            for term in f.query.split():
                pattern = f"%{_escape_like(term)}%"
                where.append(
                    "(subject LIKE ? ESCAPE '\\' OR body LIKE ? ESCAPE '\\' "
                    "OR sender LIKE ? ESCAPE '\\' OR recipient LIKE ? ESCAPE '\\')"
                )
                params.extend([pattern] * 4)
        if f.folder:
            where.append("folder = ?")
            params.append(f.folder)
        if f.account:
            where.append("account = ?")
            params.append(f.account)
        if f.sender:
            where.append("sender LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(f.sender)}%")
        if f.to:
            where.append("recipient LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(f.to)}%")
        if f.date_from:
            where.append("date >= ?")
            params.append(_utc_iso(f.date_from))
        if f.date_to:
            where.append("date <= ?")
            params.append(_utc_iso(f.date_to))
        for column, value in (
            ("is_read", f.is_read),
            ("is_important", f.is_important),
            ("has_attachments", f.has_attachments),
        ):
            if value is not None:
                where.append(f"{column} = ?")
                params.append(int(value))
        if f.labels:
            placeholders = ", ".join("?" for _ in f.labels)
            where.append(
                f"EXISTS (SELECT 1 FROM json_each(documents.labels) "
                f"WHERE json_each.value IN ({placeholders}))"
            )
            params.extend(f.labels)
        if f.category is not None:
            where.append("ai_category = ?")
            params.append(f.category.value)

        return where, params

    def folders(self) -> list[str]:
        """Distinct folders, sorted."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT folder FROM documents WHERE folder != '' ORDER BY folder"
            ).fetchall()
        return [row["folder"] for row in rows]

    def accounts(self) -> list[str]:
        """Distinct accounts, sorted."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT account FROM documents WHERE account != '' ORDER BY account"
            ).fetchall()
        return [row["account"] for row in rows]

    def stats(self) -> dict[str, Any]:
        """Totals and per-folder/per-account counts."""
        with self._lock:
            totals = self.conn.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(is_read = 0), 0) AS unread,
                          COALESCE(SUM(is_important), 0) AS important,
                          COALESCE(SUM(has_attachments), 0) AS with_attachments
                   FROM documents"""
            ).fetchone()
            by_folder = self.conn.execute(
                "SELECT folder, COUNT(*) AS cnt FROM documents GROUP BY folder ORDER BY cnt DESC"
            ).fetchall()
            by_account = self.conn.execute(
                "SELECT account, COUNT(*) AS cnt FROM documents GROUP BY account ORDER BY cnt DESC"
            ).fetchall()
        return {
            "total": totals["total"],
            "unread": totals["unread"],
            "important": totals["important"],
            "with_attachments": totals["with_attachments"],
            "by_folder": {row["folder"]: row["cnt"] for row in by_folder},
            "by_account": {row["account"]: row["cnt"] for row in by_account},
        }

    def category_stats(self) -> dict[str, Any]:
        """Counts per assigned category and method; unclassified documents counted apart."""
        with self._lock:
            by_category = self.conn.execute(
                "SELECT ai_category, COUNT(*) AS cnt FROM documents "
                "WHERE ai_category IS NOT NULL GROUP BY ai_category"
            ).fetchall()
            by_method = self.conn.execute(
                "SELECT ai_method, COUNT(*) AS cnt FROM documents "
                "WHERE ai_method IS NOT NULL GROUP BY ai_method"
            ).fetchall()
            unclassified = self.conn.execute(
                "SELECT COUNT(*) FROM documents WHERE ai_category IS NULL"
            ).fetchone()[0]
        return {
            "by_category": {row["ai_category"]: row["cnt"] for row in by_category},
            "by_method": {row["ai_method"]: row["cnt"] for row in by_method},
            "unclassified": unclassified,
        }
