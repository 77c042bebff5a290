"""Distributed mutex used to serialize OAuth token refresh.

Callers use ``acquire(key) -> token`` and ``release(token)``. Two backends:

- InProcessMutex: ``threading.Lock`` per key, for a single process.
- SQLiteMutex:    a lease row per key in the shared database, so that
                  separate processes pointed at the same file exclude each other.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol

from gmail_sync.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


class DistributedMutex(Protocol):
    def acquire(self, key: str) -> str: ...

    def release(self, token: str) -> None: ...


class InProcessMutex:
    """Per-key ``threading.Lock`` registry."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout = timeout_seconds
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._held: dict[str, str] = {}

    def acquire(self, key: str) -> str:
        with self._registry_lock:
            lock = self._locks.setdefault(key, threading.Lock())

        if not lock.acquire(timeout=self._timeout):
            raise LockTimeoutError(f"Timed out acquiring lock {key!r}")

        token = f"{key}:{uuid.uuid4().hex}"
        with self._registry_lock:
            self._held[token] = key
        return token

    def release(self, token: str) -> None:
        with self._registry_lock:
            key = self._held.pop(token, None)
        if key is None:
            logger.warning("Release of unknown lock token %s", token)
            return
        self._locks[key].release()


class SQLiteMutex:
    """Lease-based mutex backed by a ``locks`` table.

    A lease expires after ``ttl_seconds`` so a crashed holder cannot block
    refreshes forever.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        timeout_seconds: float = 30.0,
        ttl_seconds: float = 120.0,
        poll_seconds: float = 0.1,
    ) -> None:
        self._conn = conn
        self._timeout = timeout_seconds
        self._ttl = ttl_seconds
        self._poll = poll_seconds
        self._conn.execute(
            """CREATE TABLE IF NOT EXISTS locks (
                   lock_key TEXT PRIMARY KEY,
                   token TEXT NOT NULL,
                   expires_at TEXT NOT NULL
               )"""
        )
        self._conn.commit()

    def _try_acquire(self, key: str, token: str) -> bool:
        now = datetime.now(UTC)
        expires_at = (now + timedelta(seconds=self._ttl)).isoformat()
        with self._conn:
            self._conn.execute(
                "DELETE FROM locks WHERE lock_key = ? AND expires_at <= ?",
                (key, now.isoformat()),
            )
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO locks (lock_key, token, expires_at) VALUES (?, ?, ?)",
                (key, token, expires_at),
            )
        return cursor.rowcount == 1

    def acquire(self, key: str) -> str:
        token = f"{key}:{uuid.uuid4().hex}"
        deadline = time.monotonic() + self._timeout

        while not self._try_acquire(key, token):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(f"Timed out acquiring lock {key!r}")
            time.sleep(self._poll)

        logger.debug("Acquired lock %s", key)
        return token

    def release(self, token: str) -> None:
        with self._conn:
            cursor = self._conn.execute("DELETE FROM locks WHERE token = ?", (token,))
        if cursor.rowcount == 0:
            logger.warning("Lock lease %s had already expired on release", token)
