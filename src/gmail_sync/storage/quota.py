"""Sliding-window usage quota backed by append-only usage records."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from gmail_sync.storage.database import MailDatabase

logger = logging.getLogger(__name__)

GENERATE_SUMMARY = "generateSummary"


class QuotaStore:
    """``check_rate_limit`` counts usage inside the window; ``track_usage`` appends to it."""

    def __init__(self, db: MailDatabase) -> None:
        self._db = db

    def usage_in_window(
        self, user_id: str, action: str, window_hours: int, *, now: datetime | None = None
    ) -> int:
        now = now or datetime.now(UTC)
        since = (now - timedelta(hours=window_hours)).isoformat()
        row = self._db.conn.execute(
            """SELECT COALESCE(SUM(count), 0) AS total FROM usage_records
               WHERE user_id = ? AND action = ? AND timestamp > ?""",
            (user_id, action, since),
        ).fetchone()
        return row["total"]

    def check_rate_limit(
        self,
        user_id: str,
        action: str,
        limit: int,
        window_hours: int = 24,
        *,
        now: datetime | None = None,
    ) -> bool:
        """True if the user is still below ``limit`` for ``action`` in the window."""
        return self.usage_in_window(user_id, action, window_hours, now=now) < limit

    def track_usage(
        self, user_id: str, action: str, count: int = 1, *, now: datetime | None = None
    ) -> None:
        timestamp = (now or datetime.now(UTC)).isoformat()
        with self._db.conn:
            self._db.conn.execute(
                "INSERT INTO usage_records (user_id, action, count, timestamp) VALUES (?, ?, ?, ?)",
                (user_id, action, count, timestamp),
            )
