"""Archive outbox: enqueue archive requests and drain them against the provider."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable

from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import ArchiveQueueItem, OutboxResult
from gmail_sync.core.tokens import TokenManager
from gmail_sync.storage.archive_queue import ArchiveQueue
from gmail_sync.storage.credential_store import CredentialStore
from gmail_sync.storage.mail_store import MailStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GmailClient]


def enqueue_archive_request(
    queue: ArchiveQueue, store: MailStore, user_id: str, thread_id: str
) -> int:
    """Record a local archive and queue the provider-side action. Returns the item id."""
    if not store.mark_archived(user_id, thread_id):
        logger.warning("Archiving thread %s that is not stored for user %s", thread_id, user_id)
    item_id = queue.enqueue(user_id, thread_id)
    logger.info("Queued archive of thread %s for user %s (item %d)", thread_id, user_id, item_id)
    return item_id


class ArchiveOutbox:
    """Drains pending archive items once per tick.

    Items are grouped by user so each user's token is checked (and refreshed)
    once. Every item drained ends ``completed`` or ``failed``; an item whose
    status write fails stays ``pending`` and is drained again next tick.
    """

    def __init__(
        self,
        queue: ArchiveQueue,
        credentials: CredentialStore,
        tokens: TokenManager,
        client_factory: ClientFactory,
        store: MailStore,
        *,
        provider: str = "gmail",
        batch_limit: int = 50,
        inter_call_delay_seconds: float = 0.2,
    ) -> None:
        self._queue = queue
        self._credentials = credentials
        self._tokens = tokens
        self._client_factory = client_factory
        self._store = store
        self._provider = provider
        self._batch_limit = batch_limit
        self._delay = inter_call_delay_seconds

    def drain(self) -> OutboxResult:
        result = OutboxResult()
        items = self._queue.get_pending(self._batch_limit)
        if not items:
            logger.debug("Archive outbox is empty")
            return result

        by_user: dict[str, list[ArchiveQueueItem]] = {}
        for item in items:
            by_user.setdefault(item.user_id, []).append(item)
        logger.info("Draining %d archive items for %d users", len(items), len(by_user))

        calls = 0
        for user_id, user_items in by_user.items():
            try:
                credential = self._credentials.require_credential(user_id, self._provider)
                access_token = self._tokens.get_valid_access_token(credential)
                client = self._client_factory(access_token)
            except Exception as e:
                logger.error("Token refresh failed for user %s, failing %d archive items: %s",
                             user_id, len(user_items), e)
                for item in user_items:
                    self._finish(item, "failed", f"Token refresh failed: {e}", result)
                continue

            for item in user_items:
                if calls and self._delay > 0:
                    time.sleep(self._delay)
                calls += 1
                try:
                    client.archive_thread(item.thread_id)
                except Exception as e:
                    logger.error("Archive of thread %s failed: %s", item.thread_id, e)
                    self._finish(item, "failed", str(e), result)
                    continue

                if not self._finish(item, "completed", None, result):
                    continue
                try:
                    self._store.remove_thread_label(user_id, item.thread_id, "INBOX")
                except Exception:
                    logger.exception("Could not drop INBOX from stored thread %s",
                                     item.thread_id)

        logger.info("Archive outbox: %d completed, %d failed", result.completed, result.failed)
        return result

    def _finish(
        self, item: ArchiveQueueItem, status: str, error: str | None, result: OutboxResult
    ) -> bool:
        result.processed += 1
        try:
            updated = self._queue.update_status(item.id, status, error)
        except sqlite3.Error as e:
            logger.error("Could not record %s for archive item %d: %s", status, item.id, e)
            result.failed += 1
            return False
        if not updated:
            return False
        if status == "completed":
            result.completed += 1
        else:
            result.failed += 1
        return True
