"""Tests for the archive outbox: enqueue and per-user drain."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock, call, patch

import pytest

from gmail_sync.core.classifier import ThreadClassifier
from gmail_sync.core.converter import ThreadConverter
from gmail_sync.core.exceptions import ArchiveActionError, AuthError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.locks import InProcessMutex
from gmail_sync.core.parser import GmailParser
from gmail_sync.core.tokens import TokenManager
from gmail_sync.pipeline.outbox import ArchiveOutbox, enqueue_archive_request
from gmail_sync.storage.archive_queue import ArchiveQueue
from gmail_sync.storage.credential_store import CredentialStore
from gmail_sync.storage.mail_store import MailStore


@pytest.fixture
def refresher() -> MagicMock:
    return MagicMock()


@pytest.fixture
def clients() -> dict[str, MagicMock]:
    """Access token -> mocked GmailClient."""
    return {}


@pytest.fixture
def outbox(
    archive_queue: ArchiveQueue,
    credential_store: CredentialStore,
    mail_store: MailStore,
    refresher: MagicMock,
    clients: dict[str, MagicMock],
) -> ArchiveOutbox:
    tokens = TokenManager(credential_store, refresher, InProcessMutex(timeout_seconds=1))
    return ArchiveOutbox(
        archive_queue,
        credential_store,
        tokens,
        lambda token: clients[token],
        mail_store,
        inter_call_delay_seconds=0.5,
    )


@pytest.fixture
def stored_thread(
    mail_store: MailStore, classifier: ThreadClassifier, support_thread_raw: dict[str, Any]
) -> None:
    thread = GmailParser().parse_thread(support_thread_raw)
    record, messages = ThreadConverter(classifier).convert(
        "user-1", thread, classifier.classify(thread)
    )
    mail_store.save_thread(record, messages)


class TestEnqueueArchiveRequest:
    """Local archive is immediate; the provider call is queued."""

    @pytest.mark.usefixtures("stored_thread")
    def test_marks_archived_and_enqueues(
        self, archive_queue: ArchiveQueue, mail_store: MailStore
    ) -> None:
        item_id = enqueue_archive_request(archive_queue, mail_store, "user-1", "T1")

        assert mail_store.get_thread("user-1", "T1")["archived_at"] is not None
        assert [i.id for i in archive_queue.get_pending()] == [item_id]

    def test_unknown_thread_still_enqueued(
        self, archive_queue: ArchiveQueue, mail_store: MailStore
    ) -> None:
        enqueue_archive_request(archive_queue, mail_store, "user-1", "T404")

        assert archive_queue.get_pending()[0].thread_id == "T404"


class TestDrain:
    """Every drained item ends completed or failed."""

    def test_empty_queue(self, outbox: ArchiveOutbox) -> None:
        result = outbox.drain()

        assert (result.processed, result.completed, result.failed) == (0, 0, 0)

    @pytest.mark.usefixtures("stored_thread")
    def test_success_completes_and_drops_inbox(
        self,
        outbox: ArchiveOutbox,
        archive_queue: ArchiveQueue,
        mail_store: MailStore,
        clients: dict[str, MagicMock],
        connected_user,
    ) -> None:
        connected_user("user-1")
        clients["access-user-1"] = MagicMock(spec=GmailClient)
        item_id = enqueue_archive_request(archive_queue, mail_store, "user-1", "T1")

        result = outbox.drain()

        assert (result.processed, result.completed, result.failed) == (1, 1, 0)
        clients["access-user-1"].archive_thread.assert_called_once_with("T1")
        assert archive_queue.get_item(item_id).status == "completed"
        assert "INBOX" not in mail_store.get_thread("user-1", "T1")["gmail_labels"]

    def test_provider_failure_marks_failed(
        self,
        outbox: ArchiveOutbox,
        archive_queue: ArchiveQueue,
        clients: dict[str, MagicMock],
        connected_user,
    ) -> None:
        connected_user("user-1")
        client = MagicMock(spec=GmailClient)
        client.archive_thread.side_effect = [ArchiveActionError("403 forbidden"), None]
        clients["access-user-1"] = client
        first = archive_queue.enqueue("user-1", "T1")
        second = archive_queue.enqueue("user-1", "T2")

        with patch("gmail_sync.pipeline.outbox.time.sleep") as mock_sleep:
            result = outbox.drain()

        assert (result.processed, result.completed, result.failed) == (2, 1, 1)
        assert archive_queue.get_item(first).status == "failed"
        assert archive_queue.get_item(first).error_message == "403 forbidden"
        assert archive_queue.get_item(second).status == "completed"
        mock_sleep.assert_called_once_with(0.5)

    def test_status_write_failure_does_not_abort_drain(
        self,
        outbox: ArchiveOutbox,
        archive_queue: ArchiveQueue,
        clients: dict[str, MagicMock],
        connected_user,
    ) -> None:
        connected_user("user-1")
        clients["access-user-1"] = MagicMock(spec=GmailClient)
        first = archive_queue.enqueue("user-1", "T1")
        second = archive_queue.enqueue("user-1", "T2")
        record_status = archive_queue.update_status

        def locked_for_first(item_id: int, status: str, error: str | None = None) -> bool:
            if item_id == first:
                raise sqlite3.OperationalError("database is locked")
            return record_status(item_id, status, error)

        with patch.object(archive_queue, "update_status", side_effect=locked_for_first):
            with patch("gmail_sync.pipeline.outbox.time.sleep"):
                result = outbox.drain()

        assert (result.processed, result.completed, result.failed) == (2, 1, 1)
        assert archive_queue.get_item(first).status == "pending"
        assert archive_queue.get_item(second).status == "completed"
        assert clients["access-user-1"].archive_thread.call_count == 2

    def test_token_failure_fails_all_of_that_users_items(
        self,
        outbox: ArchiveOutbox,
        archive_queue: ArchiveQueue,
        refresher: MagicMock,
        clients: dict[str, MagicMock],
        connected_user,
    ) -> None:
        connected_user("user-1", expires_in=timedelta(minutes=-1))
        connected_user("user-2")
        refresher.refresh.side_effect = AuthError("invalid_grant")
        clients["access-user-2"] = MagicMock(spec=GmailClient)
        a = archive_queue.enqueue("user-1", "T1")
        b = archive_queue.enqueue("user-1", "T2")
        c = archive_queue.enqueue("user-2", "T3")

        with patch("gmail_sync.pipeline.outbox.time.sleep"):
            result = outbox.drain()

        assert (result.processed, result.completed, result.failed) == (3, 1, 2)
        for item_id in (a, b):
            item = archive_queue.get_item(item_id)
            assert item.status == "failed"
            assert item.error_message.startswith("Token refresh failed:")
        assert archive_queue.get_item(c).status == "completed"
        clients["access-user-2"].archive_thread.assert_has_calls([call("T3")])

    def test_disconnected_user_items_fail(
        self, outbox: ArchiveOutbox, archive_queue: ArchiveQueue
    ) -> None:
        item_id = archive_queue.enqueue("ghost", "T1")

        result = outbox.drain()

        assert result.failed == 1
        assert archive_queue.get_item(item_id).status == "failed"

    def test_batch_limit(
        self,
        archive_queue: ArchiveQueue,
        credential_store: CredentialStore,
        mail_store: MailStore,
        clients: dict[str, MagicMock],
        connected_user,
    ) -> None:
        connected_user("user-1")
        clients["access-user-1"] = MagicMock(spec=GmailClient)
        for i in range(3):
            archive_queue.enqueue("user-1", f"T{i}")
        tokens = TokenManager(credential_store, MagicMock(), InProcessMutex())
        outbox = ArchiveOutbox(
            archive_queue, credential_store, tokens, clients.__getitem__, mail_store,
            batch_limit=2, inter_call_delay_seconds=0,
        )

        assert outbox.drain().processed == 2
        assert len(archive_queue.get_pending()) == 1
