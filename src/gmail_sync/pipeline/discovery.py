"""Change discovery: incremental history feed with a bounded full-scan fallback."""

from __future__ import annotations

import logging

from gmail_sync.core.exceptions import CursorInvalidError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import DiscoveryResult

logger = logging.getLogger(__name__)


class ChangeDiscovery:
    """Finds the threads that changed since ``cursor``.

    Without a cursor, or when the provider rejects it, a bounded search over
    the most recent messages stands in for the change feed. In both cases the
    returned cursor is the mailbox head read before discovery started, so
    changes that land during discovery are picked up by the next tick.
    """

    def __init__(
        self,
        *,
        first_sync_max_messages: int = 50,
        first_sync_label: str | None = "INBOX",
        first_sync_query: str | None = None,
        max_results_per_page: int = 100,
    ) -> None:
        self._max_messages = first_sync_max_messages
        self._label = first_sync_label
        self._query = first_sync_query
        self._page_size = max_results_per_page

    def discover(self, client: GmailClient, cursor: str | None) -> DiscoveryResult:
        profile = client.get_profile()
        head = str(profile["historyId"]) if profile.get("historyId") else None
        account_email = profile.get("emailAddress", "")

        if cursor:
            try:
                thread_ids, _ = client.list_history(cursor)
            except CursorInvalidError as e:
                logger.warning("Sync cursor rejected, falling back to full scan: %s", e)
                return DiscoveryResult(
                    thread_ids=frozenset(self._full_scan(client)),
                    cursor=head,
                    full_scan=True,
                    cursor_invalidated=True,
                    account_email=account_email,
                )
            logger.info("Incremental sync from %s found %d changed threads",
                        cursor, len(thread_ids))
            return DiscoveryResult(
                thread_ids=frozenset(thread_ids), cursor=head, account_email=account_email
            )

        return DiscoveryResult(
            thread_ids=frozenset(self._full_scan(client)),
            cursor=head,
            full_scan=True,
            account_email=account_email,
        )

    def _full_scan(self, client: GmailClient) -> set[str]:
        thread_ids: set[str] = set()
        seen = 0
        page_size = max(1, min(self._page_size, self._max_messages))

        for page in client.discover_message_ids(self._label, page_size, self._query):
            for stub in page[: self._max_messages - seen]:
                thread_ids.add(stub.thread_id)
            seen += len(page)
            if seen >= self._max_messages:
                break

        logger.info("Full scan of %d recent messages found %d threads",
                    min(seen, self._max_messages), len(thread_ids))
        return thread_ids
