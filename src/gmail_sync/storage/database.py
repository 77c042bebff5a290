"""SQLite connection and schema shared by the storage repositories."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)


class MailDatabase:
    """Owns the SQLite connection and creates the schema.

    Tables:
    - credentials:      encrypted OAuth tokens and the sync cursor per (user, provider)
    - threads:          thread aggregates plus enrichment fields
    - messages:         per-message rows, keyed by (user, message id)
    - labels:           label id -> name per user
    - deferred_threads: thread ids to retry on the next tick
    - usage_records:    append-only quota usage
    - archive_queue:    provider-side archive actions
    - sync_runs:        audit log of scheduler ticks
    """

    def __init__(self, db_path: Path, *, timeout_seconds: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout_seconds
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    def connect(self) -> None:
        """Open the WAL-mode connection, creating the file and schema on first use."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), timeout=self._timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def close(self) -> None:
        """Close the connection; safe to call twice."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MailDatabase:
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
        """Idempotent DDL for every table the repositories use."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS credentials (
                user_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                refresh_token_encrypted BLOB NOT NULL,
                access_token_encrypted BLOB,
                expires_at TEXT NOT NULL,
                sync_cursor TEXT,
                account_email TEXT NOT NULL DEFAULT '',
                display_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, provider)
            );

            CREATE TABLE IF NOT EXISTS threads (
                user_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                subject TEXT NOT NULL DEFAULT '',
                participants TEXT NOT NULL DEFAULT '[]',
                category TEXT NOT NULL DEFAULT 'general',
                is_directly_addressed INTEGER NOT NULL DEFAULT 0,
                gmail_labels TEXT NOT NULL DEFAULT '[]',
                is_unread INTEGER NOT NULL DEFAULT 0,
                has_attachments INTEGER NOT NULL DEFAULT 0,
                is_calendar_invite INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                first_message_at TEXT NOT NULL,
                last_message_at TEXT NOT NULL,
                summary TEXT,
                action_items TEXT NOT NULL DEFAULT '[]',
                ai_topic TEXT,
                ai_labels TEXT NOT NULL DEFAULT '[]',
                integration_name TEXT,
                satisfaction_score INTEGER
                    CHECK (satisfaction_score IS NULL OR satisfaction_score BETWEEN 1 AND 10),
                satisfaction_analysis TEXT,
                is_escalation INTEGER NOT NULL DEFAULT 0,
                escalation_reason TEXT,
                escalation_type TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                is_billing INTEGER NOT NULL DEFAULT 0,
                billing_status TEXT,
                summary_generated_at TEXT,
                archived_at TEXT,
                created_at TEXT NOT NULL,
                last_synced_at TEXT NOT NULL,
                PRIMARY KEY (user_id, thread_id)
            );

            CREATE INDEX IF NOT EXISTS idx_threads_category ON threads(user_id, category);
            CREATE INDEX IF NOT EXISTS idx_threads_last_message
                ON threads(user_id, last_message_at DESC);

            CREATE TABLE IF NOT EXISTS messages (
                user_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                subject TEXT NOT NULL DEFAULT '',
                from_email TEXT NOT NULL DEFAULT '',
                from_name TEXT NOT NULL DEFAULT '',
                to_addresses TEXT NOT NULL DEFAULT '[]',
                cc_addresses TEXT NOT NULL DEFAULT '[]',
                date TEXT NOT NULL,
                snippet TEXT NOT NULL DEFAULT '',
                body_preview TEXT NOT NULL DEFAULT '',
                labels TEXT NOT NULL DEFAULT '[]',
                category TEXT NOT NULL DEFAULT 'general',
                is_unread INTEGER NOT NULL DEFAULT 0,
                has_attachments INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, message_id),
                FOREIGN KEY (user_id, thread_id) REFERENCES threads(user_id, thread_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(user_id, thread_id, date);

            CREATE TABLE IF NOT EXISTS labels (
                user_id TEXT NOT NULL,
                label_id TEXT NOT NULL,
                label_name TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, label_id)
            );

            CREATE TABLE IF NOT EXISTS deferred_threads (
                user_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                deferred_at TEXT NOT NULL,
                PRIMARY KEY (user_id, thread_id)
            );

            CREATE TABLE IF NOT EXISTS usage_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                action TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 1,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_usage_records_window
                ON usage_records(user_id, action, timestamp);

            CREATE TABLE IF NOT EXISTS archive_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                created_at TEXT NOT NULL,
                processed_at TEXT,
                next_retry_at TEXT,
                requeued_as INTEGER REFERENCES archive_queue(id)
            );

            CREATE INDEX IF NOT EXISTS idx_archive_queue_status
                ON archive_queue(status, created_at);

            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                users_processed INTEGER DEFAULT 0,
                users_failed INTEGER DEFAULT 0,
                threads_persisted INTEGER DEFAULT 0,
                threads_failed INTEGER DEFAULT 0,
                archive_completed INTEGER DEFAULT 0,
                archive_failed INTEGER DEFAULT 0
            );
        """)
