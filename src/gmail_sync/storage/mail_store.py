"""SQLite persistence for threads, messages, labels and sync runs."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from gmail_sync.core.exceptions import PersistenceError
from gmail_sync.core.models import MessageRecord, ThreadRecord
from gmail_sync.storage.database import MailDatabase

logger = logging.getLogger(__name__)

# Columns the enrichment worker may write. Everything else on a thread row is
# owned by the sync path.
ENRICHMENT_COLUMNS = (
    "summary",
    "action_items",
    "ai_topic",
    "ai_labels",
    "integration_name",
    "satisfaction_score",
    "satisfaction_analysis",
    "is_escalation",
    "escalation_reason",
    "escalation_type",
    "status",
    "is_billing",
    "billing_status",
)

_JSON_COLUMNS = {"participants", "gmail_labels", "action_items", "ai_labels",
                 "to_addresses", "cc_addresses", "labels"}
_BOOL_COLUMNS = {"is_directly_addressed", "is_unread", "has_attachments",
                 "is_calendar_invite", "is_escalation", "is_billing"}


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    for key in _JSON_COLUMNS & record.keys():
        record[key] = json.loads(record[key]) if record[key] else []
    for key in _BOOL_COLUMNS & record.keys():
        record[key] = bool(record[key])
    return record


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class MailStore:
    """Idempotent upserts keyed by (user, thread id) and (user, message id)."""

    def __init__(self, db: MailDatabase) -> None:
        self._db = db

    @property
    def conn(self) -> sqlite3.Connection:
        return self._db.conn

    # ------------------------------------------------------------------
    # Threads and messages
    # ------------------------------------------------------------------

    def _upsert_thread(self, record: ThreadRecord, now: str) -> None:
        participants = [
            {"email": p.email, "name": p.name, "role": p.role} for p in record.participants
        ]
        self.conn.execute(
            """INSERT INTO threads
               (user_id, thread_id, subject, participants, category, is_directly_addressed,
                gmail_labels, is_unread, has_attachments, is_calendar_invite, message_count,
                first_message_at, last_message_at, created_at, last_synced_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, thread_id) DO UPDATE SET
                   subject = excluded.subject,
                   participants = excluded.participants,
                   category = excluded.category,
                   is_directly_addressed = excluded.is_directly_addressed,
                   gmail_labels = excluded.gmail_labels,
                   is_unread = excluded.is_unread,
                   has_attachments = excluded.has_attachments,
                   is_calendar_invite = excluded.is_calendar_invite,
                   message_count = excluded.message_count,
                   first_message_at = excluded.first_message_at,
                   last_message_at = excluded.last_message_at,
                   last_synced_at = excluded.last_synced_at""",
            (
                record.user_id,
                record.thread_id,
                record.subject,
                json.dumps(participants),
                record.category,
                int(record.is_directly_addressed),
                json.dumps(list(record.gmail_labels)),
                int(record.is_unread),
                int(record.has_attachments),
                int(record.is_calendar_invite),
                record.message_count,
                _utc_iso(record.first_message_at),
                _utc_iso(record.last_message_at),
                now,
                now,
            ),
        )

    def _upsert_messages(self, records: Iterable[MessageRecord], now: str) -> int:
        rows = [
            (
                r.user_id,
                r.message_id,
                r.thread_id,
                r.subject,
                r.from_email,
                r.from_name,
                json.dumps(list(r.to_addresses)),
                json.dumps(list(r.cc_addresses)),
                _utc_iso(r.date),
                r.snippet,
                r.body_preview,
                json.dumps(list(r.labels)),
                r.category,
                int(r.is_unread),
                int(r.has_attachments),
                now,
                now,
            )
            for r in records
        ]
        # Messages are immutable apart from label-derived fields.
        self.conn.executemany(
            """INSERT INTO messages
               (user_id, message_id, thread_id, subject, from_email, from_name, to_addresses,
                cc_addresses, date, snippet, body_preview, labels, category, is_unread,
                has_attachments, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, message_id) DO UPDATE SET
                   labels = excluded.labels,
                   category = excluded.category,
                   is_unread = excluded.is_unread,
                   updated_at = excluded.updated_at""",
            rows,
        )
        return len(rows)

    def upsert_thread(self, record: ThreadRecord) -> None:
        now = datetime.now(UTC).isoformat()
        try:
            with self.conn:
                self._upsert_thread(record, now)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to upsert thread {record.thread_id}: {e}") from e

    def upsert_messages(self, records: list[MessageRecord]) -> int:
        """Batch upsert messages. Returns the number of rows written."""
        now = datetime.now(UTC).isoformat()
        try:
            with self.conn:
                return self._upsert_messages(records, now)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to upsert {len(records)} messages: {e}") from e

    def save_thread(self, thread: ThreadRecord, messages: list[MessageRecord]) -> None:
        """Upsert a thread and all its messages in one transaction.

        Raises:
            PersistenceError: On any database error; nothing is written.
        """
        now = datetime.now(UTC).isoformat()
        try:
            with self.conn:
                self._upsert_thread(thread, now)
                self._upsert_messages(messages, now)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save thread {thread.thread_id}: {e}") from e
        logger.debug("Saved thread %s with %d messages", thread.thread_id, len(messages))

    def get_thread(self, user_id: str, thread_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM threads WHERE user_id = ? AND thread_id = ?",
            (user_id, thread_id),
        ).fetchone()
        return _row_to_dict(row) if row else None

    def get_thread_messages(self, user_id: str, thread_id: str) -> list[dict[str, Any]]:
        """Messages of a thread in chronological order."""
        rows = self.conn.execute(
            "SELECT * FROM messages WHERE user_id = ? AND thread_id = ? "
            "ORDER BY date ASC, message_id ASC",
            (user_id, thread_id),
        ).fetchall()
        return [_row_to_dict(row) for row in rows]

    def count_threads(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM threads").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM threads WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["cnt"]

    def count_messages(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM messages").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM messages WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["cnt"]

    # ------------------------------------------------------------------
    # Enrichment write-back
    # ------------------------------------------------------------------

    def update_enrichment(
        self,
        user_id: str,
        thread_id: str,
        fields: dict[str, Any],
        *,
        generated_at: datetime,
        freshness: timedelta,
    ) -> bool:
        """Write enrichment fields unless a summary younger than ``freshness`` exists.

        Returns True if the row was updated.
        """
        unknown = set(fields) - set(ENRICHMENT_COLUMNS)
        if unknown:
            raise ValueError(f"Not enrichment columns: {sorted(unknown)}")

        sets: list[str] = []
        params: list[Any] = []
        for column in ENRICHMENT_COLUMNS:
            if column not in fields:
                continue
            value = fields[column]
            if column in _JSON_COLUMNS:
                value = json.dumps(value)
            elif column in _BOOL_COLUMNS:
                value = int(bool(value))
            sets.append(f"{column} = ?")
            params.append(value)

        sets.append("summary_generated_at = ?")
        params.append(_utc_iso(generated_at))
        cutoff = _utc_iso(generated_at - freshness)
        params.extend([user_id, thread_id, cutoff])

        try:
            with self.conn:
                cursor = self.conn.execute(
                    f"UPDATE threads SET {', '.join(sets)} "
                    "WHERE user_id = ? AND thread_id = ? "
                    "AND (summary IS NULL OR summary_generated_at IS NULL "
                    "OR summary_generated_at <= ?)",
                    params,
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write enrichment for {thread_id}: {e}") from e
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Archive state
    # ------------------------------------------------------------------

    def mark_archived(self, user_id: str, thread_id: str) -> bool:
        now = datetime.now(UTC).isoformat()
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE threads SET archived_at = ? WHERE user_id = ? AND thread_id = ?",
                (now, user_id, thread_id),
            )
        return cursor.rowcount > 0

    def remove_thread_label(self, user_id: str, thread_id: str, label_id: str) -> None:
        thread = self.get_thread(user_id, thread_id)
        if thread is None or label_id not in thread["gmail_labels"]:
            return
        labels = [lbl for lbl in thread["gmail_labels"] if lbl != label_id]
        with self.conn:
            self.conn.execute(
                "UPDATE threads SET gmail_labels = ? WHERE user_id = ? AND thread_id = ?",
                (json.dumps(labels), user_id, thread_id),
            )

    # ------------------------------------------------------------------
    # Deferred threads
    # ------------------------------------------------------------------

    def defer_threads(self, user_id: str, thread_ids: Iterable[str], reason: str = "") -> int:
        """Remember thread ids to retry on the next tick."""
        now = datetime.now(UTC).isoformat()
        rows = [(user_id, thread_id, reason, now) for thread_id in thread_ids]
        if not rows:
            return 0
        with self.conn:
            self.conn.executemany(
                """INSERT INTO deferred_threads (user_id, thread_id, reason, deferred_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, thread_id) DO UPDATE SET
                       reason = excluded.reason,
                       deferred_at = excluded.deferred_at""",
                rows,
            )
        return len(rows)

    def get_deferred_threads(self, user_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT thread_id FROM deferred_threads WHERE user_id = ? ORDER BY deferred_at",
            (user_id,),
        ).fetchall()
        return [row["thread_id"] for row in rows]

    def clear_deferred_threads(self, user_id: str, thread_ids: Iterable[str]) -> None:
        rows = [(user_id, thread_id) for thread_id in thread_ids]
        if not rows:
            return
        with self.conn:
            self.conn.executemany(
                "DELETE FROM deferred_threads WHERE user_id = ? AND thread_id = ?", rows
            )

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    def upsert_labels(self, user_id: str, labels: list[dict[str, str]]) -> int:
        """Replace the stored id-to-name mapping for each given label.

        Args:
            user_id: Owner of the labels.
            labels: ``list_labels()`` output: dicts holding id and name.

        Returns:
            How many rows were written.
        """
        now = datetime.now(UTC).isoformat()
        rows = [(user_id, lbl["id"], lbl["name"], now) for lbl in labels]
        with self.conn:
            self.conn.executemany(
                """INSERT INTO labels (user_id, label_id, label_name, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, label_id) DO UPDATE SET
                       label_name = excluded.label_name,
                       updated_at = excluded.updated_at""",
                rows,
            )
        return len(rows)

    def get_label_names(self, user_id: str) -> dict[str, str]:
        rows = self.conn.execute(
            "SELECT label_id, label_name FROM labels WHERE user_id = ?", (user_id,)
        ).fetchall()
        return {row["label_id"]: row["label_name"] for row in rows}

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    def start_run(self) -> int:
        """Record the start of a scheduler tick. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        with self.conn:
            cursor = self.conn.execute("INSERT INTO sync_runs (started_at) VALUES (?)", (now,))
        return cursor.lastrowid or 0

    def complete_run(
        self,
        run_id: int,
        users_processed: int = 0,
        users_failed: int = 0,
        threads_persisted: int = 0,
        threads_failed: int = 0,
        archive_completed: int = 0,
        archive_failed: int = 0,
    ) -> None:
        """Record the completion of a scheduler tick."""
        now = datetime.now(UTC).isoformat()
        with self.conn:
            self.conn.execute(
                """UPDATE sync_runs SET
                   completed_at = ?, users_processed = ?, users_failed = ?,
                   threads_persisted = ?, threads_failed = ?,
                   archive_completed = ?, archive_failed = ?
                   WHERE run_id = ?""",
                (now, users_processed, users_failed, threads_persisted, threads_failed,
                 archive_completed, archive_failed, run_id),
            )

    def get_last_run(self) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM sync_runs ORDER BY run_id DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None
