"""
SQLite record store.

Holds the five pipeline collections (newsletters, links, summaries,
aggregated_summaries, newsletter_aggregations), the system_config key/value
table and the append-only processing_logs table. Every public write commits
on its own. The only multi-statement transaction is an aggregate together
with its membership rows.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .models import (
    STATUS_PENDING,
    NEWSLETTER_STATUSES,
    AggregatedSummary,
    Link,
    Newsletter,
    ProcessingLog,
    RawEmail,
    ResolvedLink,
    Summary,
)
from .utils import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS newsletters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    gmail_message_id TEXT NOT NULL UNIQUE,
    subject TEXT NOT NULL DEFAULT '',
    sender TEXT NOT NULL DEFAULT '',
    received_at TEXT NOT NULL,
    html_content TEXT NOT NULL,
    processed_status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    newsletter_id INTEGER NOT NULL REFERENCES newsletters(id),
    tracked_url TEXT NOT NULL,
    final_url TEXT,
    associated_text TEXT NOT NULL DEFAULT '',
    resolution_status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    newsletter_id INTEGER NOT NULL REFERENCES newsletters(id),
    markdown_content TEXT NOT NULL,
    processing_time_ms INTEGER NOT NULL DEFAULT 0,
    superseded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS aggregated_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    markdown_content TEXT NOT NULL,
    date_range_start TEXT NOT NULL,
    date_range_end TEXT NOT NULL,
    newsletter_count INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS newsletter_aggregations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aggregated_summary_id INTEGER NOT NULL REFERENCES aggregated_summaries(id),
    newsletter_id INTEGER NOT NULL UNIQUE REFERENCES newsletters(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processing_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    log_type TEXT NOT NULL,
    operation TEXT NOT NULL,
    message TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_summaries_created_at ON summaries(created_at);
CREATE INDEX IF NOT EXISTS idx_links_newsletter ON links(newsletter_id);
"""


class RecordStore:
    def __init__(self, path: str = ":memory:"):
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA)
        logger.info("Record store ready at %s", path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ---- low level ----

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock, self._conn:
            return self._conn.execute(sql, params)

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    @staticmethod
    def _placeholders(values: Sequence[Any]) -> str:
        return ",".join("?" for _ in values)

    # ---- newsletters ----

    def existing_message_ids(self) -> Set[str]:
        rows = self._query("SELECT gmail_message_id FROM newsletters")
        return {row["gmail_message_id"] for row in rows}

    def save_newsletters(self, emails: Iterable[RawEmail]) -> List[Newsletter]:
        """Insert pending rows; emails whose message id is already stored are skipped."""
        saved: List[Newsletter] = []
        for email in emails:
            now = to_iso(utc_now())
            cursor = self._write(
                """
                INSERT OR IGNORE INTO newsletters
                    (gmail_message_id, subject, sender, received_at, html_content,
                     processed_status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    email.gmail_message_id,
                    email.subject,
                    email.sender,
                    to_iso(email.received_at),
                    email.html_content,
                    STATUS_PENDING,
                    now,
                    now,
                ),
            )
            if cursor.rowcount != 1:
                logger.info("Newsletter %s already stored; skipping", email.gmail_message_id)
                continue
            newsletter = self.get_newsletter(int(cursor.lastrowid))
            if newsletter is not None:
                saved.append(newsletter)
        return saved

    def get_newsletter(self, newsletter_id: int) -> Optional[Newsletter]:
        rows = self._query("SELECT * FROM newsletters WHERE id = ?", (newsletter_id,))
        return self._to_newsletter(rows[0]) if rows else None

    def list_newsletters(self, status: Optional[str] = None) -> List[Newsletter]:
        if status is None:
            rows = self._query("SELECT * FROM newsletters ORDER BY received_at DESC, id DESC")
        else:
            rows = self._query(
                "SELECT * FROM newsletters WHERE processed_status = ? ORDER BY received_at DESC, id DESC",
                (status,),
            )
        return [self._to_newsletter(row) for row in rows]

    def update_newsletter_status(self, newsletter_id: int, status: str) -> None:
        if status not in NEWSLETTER_STATUSES:
            raise ValueError(f"Unknown newsletter status: {status}")
        cursor = self._write(
            "UPDATE newsletters SET processed_status = ?, updated_at = ? WHERE id = ?",
            (status, to_iso(utc_now()), newsletter_id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Newsletter {newsletter_id} not found")

    # ---- links ----

    def save_links(self, links: Sequence[ResolvedLink]) -> List[Link]:
        saved: List[Link] = []
        for link in links:
            now = utc_now()
            cursor = self._write(
                """
                INSERT INTO links
                    (newsletter_id, tracked_url, final_url, associated_text, resolution_status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    link.newsletter_id,
                    link.tracked_url,
                    link.final_url,
                    link.associated_text,
                    link.resolution_status,
                    to_iso(now),
                ),
            )
            saved.append(
                Link(
                    id=int(cursor.lastrowid),
                    newsletter_id=link.newsletter_id,
                    tracked_url=link.tracked_url,
                    final_url=link.final_url,
                    associated_text=link.associated_text,
                    resolution_status=link.resolution_status,
                    created_at=now,
                )
            )
        return saved

    def links_for_newsletter(self, newsletter_id: int) -> List[Link]:
        rows = self._query("SELECT * FROM links WHERE newsletter_id = ? ORDER BY id", (newsletter_id,))
        return [
            Link(
                id=row["id"],
                newsletter_id=row["newsletter_id"],
                tracked_url=row["tracked_url"],
                final_url=row["final_url"],
                associated_text=row["associated_text"],
                resolution_status=row["resolution_status"],
                created_at=parse_iso(row["created_at"]),
            )
            for row in rows
        ]

    # ---- summaries ----

    def insert_summary(
        self,
        newsletter_id: int,
        markdown_content: str,
        processing_time_ms: int,
        created_at: Optional[datetime] = None,
    ) -> Summary:
        created = created_at or utc_now()
        self._write(
            "UPDATE summaries SET superseded = 1 WHERE newsletter_id = ? AND superseded = 0",
            (newsletter_id,),
        )
        cursor = self._write(
            """
            INSERT INTO summaries (newsletter_id, markdown_content, processing_time_ms, superseded, created_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (newsletter_id, markdown_content, processing_time_ms, to_iso(created)),
        )
        return Summary(
            id=int(cursor.lastrowid),
            newsletter_id=newsletter_id,
            markdown_content=markdown_content,
            processing_time_ms=processing_time_ms,
            created_at=parse_iso(to_iso(created)),
        )

    def get_summaries(self, summary_ids: Sequence[int]) -> List[Summary]:
        if not summary_ids:
            return []
        rows = self._query(
            f"SELECT * FROM summaries WHERE superseded = 0 AND id IN ({self._placeholders(summary_ids)}) "
            "ORDER BY created_at, id",
            list(summary_ids),
        )
        return [self._to_summary(row) for row in rows]

    def summary_for_newsletter(self, newsletter_id: int) -> Optional[Summary]:
        rows = self._query(
            "SELECT * FROM summaries WHERE newsletter_id = ? AND superseded = 0 ORDER BY id DESC LIMIT 1",
            (newsletter_id,),
        )
        return self._to_summary(rows[0]) if rows else None

    def recent_summaries(self, since: datetime) -> List[Summary]:
        """Non-superseded summaries created at or after `since`, newest first."""
        rows = self._query(
            "SELECT * FROM summaries WHERE superseded = 0 AND created_at >= ? ORDER BY created_at DESC, id DESC",
            (to_iso(since),),
        )
        return [self._to_summary(row) for row in rows]

    # ---- aggregations ----

    def any_aggregated(self, newsletter_ids: Sequence[int]) -> bool:
        if not newsletter_ids:
            return False
        rows = self._query(
            f"SELECT 1 FROM newsletter_aggregations WHERE newsletter_id IN ({self._placeholders(newsletter_ids)}) "
            "LIMIT 1",
            list(newsletter_ids),
        )
        return bool(rows)

    def insert_aggregated_summary(
        self,
        markdown_content: str,
        date_range_start: datetime,
        date_range_end: datetime,
        newsletter_ids: Sequence[int],
        created_at: Optional[datetime] = None,
    ) -> AggregatedSummary:
        created = created_at or utc_now()
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO aggregated_summaries
                    (markdown_content, date_range_start, date_range_end, newsletter_count, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    markdown_content,
                    to_iso(date_range_start),
                    to_iso(date_range_end),
                    len(newsletter_ids),
                    to_iso(created),
                ),
            )
            aggregated_id = int(cursor.lastrowid)
            self._conn.executemany(
                "INSERT INTO newsletter_aggregations (aggregated_summary_id, newsletter_id, created_at) VALUES (?, ?, ?)",
                [(aggregated_id, newsletter_id, to_iso(created)) for newsletter_id in newsletter_ids],
            )
        aggregated = self.get_aggregated_summary(aggregated_id)
        if aggregated is None:
            raise LookupError(f"Aggregated summary {aggregated_id} not found after insert")
        return aggregated

    def get_aggregated_summary(self, aggregated_id: int) -> Optional[AggregatedSummary]:
        rows = self._query("SELECT * FROM aggregated_summaries WHERE id = ?", (aggregated_id,))
        return self._to_aggregated(rows[0]) if rows else None

    def list_aggregated_summaries(self) -> List[AggregatedSummary]:
        rows = self._query("SELECT * FROM aggregated_summaries ORDER BY created_at DESC, id DESC")
        return [self._to_aggregated(row) for row in rows]

    def aggregated_newsletter_ids(self, aggregated_id: int) -> List[int]:
        rows = self._query(
            "SELECT newsletter_id FROM newsletter_aggregations WHERE aggregated_summary_id = ? ORDER BY id",
            (aggregated_id,),
        )
        return [row["newsletter_id"] for row in rows]

    # ---- config ----

    def get_config(self, key: str) -> Any:
        rows = self._query("SELECT value FROM system_config WHERE key = ?", (key,))
        if not rows:
            return None
        try:
            return json.loads(rows[0]["value"])
        except json.JSONDecodeError:
            logger.warning("Config key %s holds non-JSON value; ignoring", key)
            return None

    def set_config(self, key: str, value: Any) -> None:
        self._write(
            """
            INSERT INTO system_config (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), to_iso(utc_now())),
        )

    # ---- processing logs ----

    def append_log(self, log_type: str, operation: str, message: str, details: Dict[str, Any]) -> ProcessingLog:
        now = utc_now()
        cursor = self._write(
            "INSERT INTO processing_logs (log_type, operation, message, details, created_at) VALUES (?, ?, ?, ?, ?)",
            (log_type, operation, message, json.dumps(details, default=str), to_iso(now)),
        )
        return ProcessingLog(
            id=int(cursor.lastrowid),
            log_type=log_type,
            operation=operation,
            message=message,
            details=details,
            created_at=now,
        )

    def list_logs(self, limit: int = 100, log_type: Optional[str] = None) -> List[ProcessingLog]:
        if log_type is None:
            rows = self._query("SELECT * FROM processing_logs ORDER BY id DESC LIMIT ?", (limit,))
        else:
            rows = self._query(
                "SELECT * FROM processing_logs WHERE log_type = ? ORDER BY id DESC LIMIT ?",
                (log_type, limit),
            )
        return [
            ProcessingLog(
                id=row["id"],
                log_type=row["log_type"],
                operation=row["operation"],
                message=row["message"],
                details=json.loads(row["details"]),
                created_at=parse_iso(row["created_at"]),
            )
            for row in rows
        ]

    # ---- row mapping ----

    @staticmethod
    def _to_newsletter(row: sqlite3.Row) -> Newsletter:
        return Newsletter(
            id=row["id"],
            gmail_message_id=row["gmail_message_id"],
            subject=row["subject"],
            sender=row["sender"],
            received_at=parse_iso(row["received_at"]),
            html_content=row["html_content"],
            processed_status=row["processed_status"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _to_summary(row: sqlite3.Row) -> Summary:
        return Summary(
            id=row["id"],
            newsletter_id=row["newsletter_id"],
            markdown_content=row["markdown_content"],
            processing_time_ms=row["processing_time_ms"],
            created_at=parse_iso(row["created_at"]),
            superseded=bool(row["superseded"]),
        )

    @staticmethod
    def _to_aggregated(row: sqlite3.Row) -> AggregatedSummary:
        return AggregatedSummary(
            id=row["id"],
            markdown_content=row["markdown_content"],
            date_range_start=parse_iso(row["date_range_start"]),
            date_range_end=parse_iso(row["date_range_end"]),
            newsletter_count=row["newsletter_count"],
            created_at=parse_iso(row["created_at"]),
        )
