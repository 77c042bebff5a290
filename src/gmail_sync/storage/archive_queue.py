"""Outbox table of pending provider-side archive actions."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime, timedelta

from gmail_sync.core.models import ArchiveQueueItem
from gmail_sync.storage.database import MailDatabase

logger = logging.getLogger(__name__)

# Status state machine: pending → completed | failed (terminal, exactly once)
TERMINAL_STATUSES = {"completed", "failed"}


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ArchiveQueue:
    """Repository for ``ArchiveQueueItem`` rows. Rows are never deleted."""

    def __init__(self, db: MailDatabase) -> None:
        self._db = db

    @property
    def conn(self) -> sqlite3.Connection:
        return self._db.conn

    def enqueue(self, user_id: str, thread_id: str) -> int:
        """Insert a new pending item. Returns its id."""
        now = datetime.now(UTC).isoformat()
        with self.conn:
            cursor = self.conn.execute(
                """INSERT INTO archive_queue (user_id, thread_id, status, created_at)
                   VALUES (?, ?, 'pending', ?)""",
                (user_id, thread_id, now),
            )
        return cursor.lastrowid or 0

    def get_pending(self, limit: int = 50) -> list[ArchiveQueueItem]:
        """Oldest pending items first."""
        rows = self.conn.execute(
            "SELECT * FROM archive_queue WHERE status = 'pending' "
            "ORDER BY created_at, id LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._to_item(row) for row in rows]

    def get_item(self, item_id: int) -> ArchiveQueueItem | None:
        row = self.conn.execute("SELECT * FROM archive_queue WHERE id = ?", (item_id,)).fetchone()
        return self._to_item(row) if row else None

    def update_status(self, item_id: int, status: str, error_message: str | None = None) -> bool:
        """Move a pending item to a terminal status.

        Counts the attempt and stamps ``processed_at``. A failed item gets
        ``next_retry_at`` = now + 2^attempts minutes for administrative requeue.

        Returns False if the item was not pending (already terminal).
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid status: {status}")

        now = datetime.now(UTC)
        row = self.conn.execute(
            "SELECT attempts FROM archive_queue WHERE id = ? AND status = 'pending'",
            (item_id,),
        ).fetchone()
        if row is None:
            logger.warning("Archive item %s is not pending, status not changed", item_id)
            return False

        attempts = row["attempts"] + 1
        next_retry_at = None
        if status == "failed":
            next_retry_at = (now + timedelta(minutes=2 ** attempts)).isoformat()

        with self.conn:
            cursor = self.conn.execute(
                """UPDATE archive_queue SET
                   status = ?, error_message = ?, attempts = ?,
                   processed_at = ?, next_retry_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (status, error_message, attempts, now.isoformat(), next_retry_at, item_id),
            )
        return cursor.rowcount > 0

    def requeue_failed(self, max_attempts: int, *, now: datetime | None = None) -> int:
        """Create fresh pending items for failed items that are due for retry.

        The failed item stays failed and is linked to its successor through
        ``requeued_as``, so each item transitions exactly once.

        Returns the number of items requeued.
        """
        now = now or datetime.now(UTC)
        rows = self.conn.execute(
            """SELECT id, user_id, thread_id, attempts FROM archive_queue
               WHERE status = 'failed' AND requeued_as IS NULL
                 AND attempts < ? AND next_retry_at <= ?
               ORDER BY created_at, id""",
            (max_attempts, now.isoformat()),
        ).fetchall()

        requeued = 0
        with self.conn:
            for row in rows:
                cursor = self.conn.execute(
                    """INSERT INTO archive_queue (user_id, thread_id, status, attempts, created_at)
                       VALUES (?, ?, 'pending', ?, ?)""",
                    (row["user_id"], row["thread_id"], row["attempts"], now.isoformat()),
                )
                self.conn.execute(
                    "UPDATE archive_queue SET requeued_as = ? WHERE id = ?",
                    (cursor.lastrowid, row["id"]),
                )
                requeued += 1
        return requeued

    def count_by_status(self) -> dict[str, int]:
        """Get count of queue items grouped by status."""
        rows = self.conn.execute(
            "SELECT status, COUNT(*) as cnt FROM archive_queue GROUP BY status"
        ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    @staticmethod
    def _to_item(row: sqlite3.Row) -> ArchiveQueueItem:
        return ArchiveQueueItem(
            id=row["id"],
            user_id=row["user_id"],
            thread_id=row["thread_id"],
            status=row["status"],
            attempts=row["attempts"],
            error_message=row["error_message"],
            created_at=_parse_ts(row["created_at"]),
            processed_at=_parse_ts(row["processed_at"]),
            next_retry_at=_parse_ts(row["next_retry_at"]),
        )
