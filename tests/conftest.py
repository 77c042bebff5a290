"""Shared fixtures for Gmail Sync tests."""

from __future__ import annotations

import base64
import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from gmail_sync.config.settings import DEFAULT_SKIP_LABELS
from gmail_sync.core.classifier import ThreadClassifier
from gmail_sync.core.crypto import TokenCipher
from gmail_sync.storage.archive_queue import ArchiveQueue
from gmail_sync.storage.credential_store import CredentialStore
from gmail_sync.storage.database import MailDatabase
from gmail_sync.storage.mail_store import MailStore
from gmail_sync.storage.quota import QuotaStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"

ROUTING = {"support@acme.io": "support", "hello@acme.io": "onboarding"}


@pytest.fixture
def fixtures_dir() -> Path:
    """Path to the test fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def support_thread_raw() -> dict[str, Any]:
    """threads.get payload: 3-message customer thread sent to the support address."""
    return json.loads((FIXTURES_DIR / "support_thread.json").read_text())


@pytest.fixture
def calendar_thread_raw() -> dict[str, Any]:
    """threads.get payload: a Google Calendar invitation with a text/calendar part."""
    return json.loads((FIXTURES_DIR / "calendar_invite_thread.json").read_text())


@pytest.fixture
def raw_thread_factory() -> Callable[..., dict[str, Any]]:
    """Build a minimal single-message threads.get payload."""

    def make(
        thread_id: str,
        *,
        subject: str = "Hello",
        sender: str = "Alice <alice@example.com>",
        to: str = "me@acme.io",
        labels: list[str] | None = None,
        body: str = "Just checking in.",
        date: str = "Mon, 06 Jan 2025 09:00:00 +0000",
    ) -> dict[str, Any]:
        data = base64.urlsafe_b64encode(body.encode()).decode().rstrip("=")
        return {
            "id": thread_id,
            "historyId": "1",
            "messages": [
                {
                    "id": f"{thread_id}-m1",
                    "threadId": thread_id,
                    "labelIds": labels if labels is not None else ["INBOX"],
                    "snippet": body[:100],
                    "payload": {
                        "mimeType": "text/plain",
                        "headers": [
                            {"name": "From", "value": sender},
                            {"name": "To", "value": to},
                            {"name": "Subject", "value": subject},
                            {"name": "Date", "value": date},
                        ],
                        "body": {"size": len(body), "data": data},
                    },
                }
            ],
        }

    return make


@pytest.fixture
def classifier() -> ThreadClassifier:
    """Classifier for the acme.io organization with two routing addresses."""
    return ThreadClassifier("acme.io", ROUTING, DEFAULT_SKIP_LABELS)


@pytest.fixture
def db(tmp_path: Path) -> Iterator[MailDatabase]:
    """A connected SQLite database in a temp directory."""
    database = MailDatabase(tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def credential_store(db: MailDatabase, cipher: TokenCipher) -> CredentialStore:
    return CredentialStore(db, cipher)


@pytest.fixture
def mail_store(db: MailDatabase) -> MailStore:
    return MailStore(db)


@pytest.fixture
def quota(db: MailDatabase) -> QuotaStore:
    return QuotaStore(db)


@pytest.fixture
def archive_queue(db: MailDatabase) -> ArchiveQueue:
    return ArchiveQueue(db)


@pytest.fixture
def connected_user(credential_store: CredentialStore) -> Callable[..., None]:
    """Store a credential with a valid (unexpired) access token."""

    def connect(
        user_id: str = "user-1",
        *,
        cursor: str | None = None,
        account_email: str = "me@acme.io",
        expires_in: timedelta = timedelta(hours=1),
    ) -> None:
        credential_store.store_credential(
            user_id,
            "gmail",
            refresh_token=f"refresh-{user_id}",
            access_token=f"access-{user_id}",
            expires_at=datetime.now(UTC) + expires_in,
            account_email=account_email,
        )
        if cursor is not None:
            credential_store.update_sync_cursor(user_id, "gmail", cursor)

    return connect
