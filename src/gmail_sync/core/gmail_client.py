"""Gmail API client for profile, labels, change feed, thread fetch, and label changes."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable, Iterator
from typing import Any

import httplib2
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from gmail_sync.core.exceptions import (
    ArchiveActionError,
    AuthError,
    CursorInvalidError,
    GmailApiError,
    GmailSyncError,
    NetworkError,
    RateLimitError,
)
from gmail_sync.core.models import FetchResult, MessageStub

logger = logging.getLogger(__name__)

# History record keys that carry messages; each entry is either a message or
# a {"message": {...}} wrapper.
_HISTORY_KEYS = ("messages", "messagesAdded", "messagesDeleted", "labelsAdded", "labelsRemoved")

# A rejected startHistoryId comes back as 404 (too old) or 400 (malformed).
_CURSOR_REJECTED_STATUSES = {400, 404}

# Reasons Gmail puts in error.errors[].reason when throttling, often with 403.
_RATE_LIMIT_REASONS = {"ratelimitexceeded", "userratelimitexceeded"}

# Thread fetches answered with these will not succeed on a later attempt.
_PERMANENT_FETCH_STATUSES = {400, 403, 404, 410}


def _error_reasons(exc: HttpError) -> set[str]:
    """Lower-cased ``reason`` values from a Gmail JSON error body."""
    try:
        payload = json.loads(exc.content)
    except (TypeError, ValueError):
        return set()
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return set()
    return {
        str(item.get("reason", "")).lower()
        for item in error.get("errors", [])
        if isinstance(item, dict)
    }


def _is_rate_limit_error(exc: Exception) -> bool:
    """True for HTTP 429 or a rateLimitExceeded reason.

    An HttpError is judged by its status and structured reasons only; its
    string form carries the request URI, where ids and cursors may contain
    any digits.
    """
    if isinstance(exc, HttpError):
        return exc.status_code == 429 or bool(_error_reasons(exc) & _RATE_LIMIT_REASONS)
    text = str(exc).lower()
    return "429" in text or "ratelimitexceeded" in text


def _is_network_error(exc: Exception) -> bool:
    """Transport failures: DNS, connection resets, socket timeouts."""
    return isinstance(exc, (httplib2.HttpLib2Error, OSError))


def _is_retryable_error(exc: Exception) -> bool:
    return _is_rate_limit_error(exc) or _is_network_error(exc)


def _is_permanent_fetch_error(exc: Exception) -> bool:
    return isinstance(exc, HttpError) and exc.status_code in _PERMANENT_FETCH_STATUSES


def _status_code(exc: Exception) -> int | None:
    if isinstance(exc, HttpError):
        return exc.status_code
    return None


class GmailClient:
    """One user's mailbox over the Gmail API, with jittered backoff on 429 and transport errors."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 8.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 0,
    ) -> None:
        self._service = service
        self._mailbox = user_id
        self._max_attempts = max(1, max_attempts)
        self._first_backoff = initial_backoff_seconds
        self._backoff_cap = max_backoff_seconds
        self._page_delay = inter_page_delay_seconds
        self._transport_retries = num_retries

    def _sleep_backoff(self, backoff: float, context: str, attempt: int) -> float:
        """Sleep a random share of the capped backoff; return the doubled backoff."""
        ceiling = min(backoff, self._backoff_cap)
        delay = random.uniform(0, ceiling)
        logger.warning(
            "Transient failure during %s (attempt %d/%d), sleeping %.2fs (backoff=%.2f)",
            context, attempt, self._max_attempts, delay, backoff,
        )
        time.sleep(delay)
        return min(backoff * 2, self._backoff_cap)

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Run one HttpRequest, backing off on rate limits and transport errors.

        ``context`` names the operation in log lines and error messages.

        Raises:
            RateLimitError: Still rate limited on the last attempt.
            NetworkError: Still failing at the transport level on the last attempt.
            AuthError: The provider answered 401.
            GmailApiError: Any other provider error; not retried.
        """
        backoff = self._first_backoff
        attempt = 0
        while True:
            attempt += 1
            try:
                return request.execute(num_retries=self._transport_retries)
            except Exception as e:
                if not _is_retryable_error(e):
                    status = _status_code(e)
                    if status == 401:
                        raise AuthError(f"Unauthorized during {context}: {e}") from e
                    raise GmailApiError(f"Failed to {context}: {e}", status_code=status) from e
                if attempt >= self._max_attempts:
                    error_cls = RateLimitError if _is_rate_limit_error(e) else NetworkError
                    raise error_cls(
                        f"Failed to {context} after {self._max_attempts} attempts: {e}"
                    ) from e
                backoff = self._sleep_backoff(backoff, context, attempt)

    def _pages(
        self, list_method: Callable[..., Any], context: str, params: dict[str, Any]
    ) -> Iterator[dict[str, Any]]:
        """Follow ``nextPageToken`` through a list endpoint, pausing between pages."""
        call_params = {"userId": self._mailbox, **params}
        while True:
            response = self._execute_with_retry(list_method(**call_params), context)
            yield response

            next_token = response.get("nextPageToken")
            if not next_token:
                return
            call_params["pageToken"] = next_token
            if self._page_delay > 0:
                time.sleep(self._page_delay)

    def get_profile(self) -> dict[str, Any]:
        """Mailbox profile: ``emailAddress`` and the current ``historyId`` head."""
        request = self._service.users().getProfile(userId=self._mailbox)
        return self._execute_with_retry(request, "get profile")

    def list_labels(self) -> list[dict[str, str]]:
        """Label id/name pairs for the mailbox, system labels included."""
        response = self._execute_with_retry(
            self._service.users().labels().list(userId=self._mailbox), "list labels"
        )
        return [
            {"id": label["id"], "name": label["name"]} for label in response.get("labels", [])
        ]

    def discover_message_ids(
        self,
        label_id: str | None,
        max_results_per_page: int = 100,
        query: str | None = None,
    ) -> Iterator[list[MessageStub]]:
        """Lazily page through messages.list, one list of stubs per page.

        ``label_id`` of None lists all mail; ``query`` is a Gmail search
        expression applied on top. Stops at the first empty page.
        """
        params: dict[str, Any] = {"maxResults": max_results_per_page}
        if label_id:
            params["labelIds"] = [label_id]
        if query:
            params["q"] = query

        list_method = self._service.users().messages().list
        for response in self._pages(list_method, "discover messages", params):
            page = response.get("messages", [])
            if not page:
                return
            logger.debug("messages.list page with %d ids", len(page))
            yield [MessageStub(message_id=m["id"], thread_id=m["threadId"]) for m in page]

    def list_history(self, start_history_id: str) -> tuple[set[str], str | None]:
        """Collect thread ids touched since ``start_history_id``.

        Returns:
            Tuple of (thread ids, latest historyId reported by the feed).

        Raises:
            CursorInvalidError: The provider rejected the start cursor.
        """
        thread_ids: set[str] = set()
        latest: str | None = None
        list_method = self._service.users().history().list
        pages = self._pages(list_method, "list history", {"startHistoryId": start_history_id})

        try:
            for response in pages:
                for record in response.get("history", []):
                    for key in _HISTORY_KEYS:
                        for entry in record.get(key, []):
                            thread_id = entry.get("message", entry).get("threadId")
                            if thread_id:
                                thread_ids.add(thread_id)
                latest = response.get("historyId", latest)
        except GmailApiError as e:
            if e.status_code in _CURSOR_REJECTED_STATUSES:
                raise CursorInvalidError(
                    f"History cursor {start_history_id} rejected: {e}"
                ) from e
            raise

        logger.debug("History since %s touched %d threads", start_history_id, len(thread_ids))
        return thread_ids, latest

    def _fetch_threads_once(
        self, thread_ids: list[str]
    ) -> tuple[dict[str, dict[str, Any]], dict[str, Exception]]:
        """Single batch round-trip; returns (payloads, errors), both keyed by thread id."""
        payloads: dict[str, dict[str, Any]] = {}
        errors: dict[str, Exception] = {}

        def on_response(
            thread_id: str, response: dict[str, Any] | None, exception: Exception | None
        ) -> None:
            if exception is not None:
                errors[thread_id] = exception
            elif not response:
                errors[thread_id] = GmailSyncError(f"Empty response for thread {thread_id}")
            else:
                payloads[thread_id] = response

        threads_api = self._service.users().threads()
        batch: BatchHttpRequest = self._service.new_batch_http_request(callback=on_response)
        for thread_id in thread_ids:
            request = threads_api.get(userId=self._mailbox, id=thread_id, format="full")
            batch.add(request, request_id=thread_id)

        try:
            batch.execute()
        except Exception as e:
            # The whole round-trip failed; every thread shares the error.
            for thread_id in thread_ids:
                if thread_id not in payloads:
                    errors[thread_id] = e

        return payloads, errors

    def fetch_threads(self, thread_ids: list[str]) -> FetchResult:
        """Fetch full thread payloads in a single batch, retrying threads individually.

        A thread that hits 429 or a network error is retried with exponential
        backoff up to ``max_attempts`` in total. A thread the provider rejects
        with 400, 403, 404 or 410 is reported in ``unavailable``; one that
        exhausts its attempts or fails any other way is reported in ``failed``.
        """
        pending = list(dict.fromkeys(thread_ids))
        fetched: dict[str, dict[str, Any]] = {}
        failed: list[str] = []
        unavailable: list[str] = []
        backoff = self._first_backoff

        for attempt in range(1, self._max_attempts + 1):
            if not pending:
                break

            payloads, errors = self._fetch_threads_once(pending)
            fetched.update(payloads)

            retryable: list[str] = []
            for thread_id, exc in errors.items():
                if _is_retryable_error(exc):
                    retryable.append(thread_id)
                elif _is_permanent_fetch_error(exc):
                    logger.warning("Thread %s is unavailable: %s", thread_id, exc)
                    unavailable.append(thread_id)
                else:
                    logger.error("Fetch failed for thread %s: %s", thread_id, exc)
                    failed.append(thread_id)

            if not retryable:
                break
            if attempt >= self._max_attempts:
                logger.error(
                    "Giving up on %d threads after %d attempts: %s",
                    len(retryable), self._max_attempts, ", ".join(retryable),
                )
                failed.extend(retryable)
                break

            backoff = self._sleep_backoff(backoff, "fetch threads", attempt)
            pending = retryable

        logger.debug(
            "Batch fetched %d threads (%d failed, %d unavailable)",
            len(fetched), len(failed), len(unavailable),
        )
        return FetchResult(
            threads=tuple(fetched[tid] for tid in thread_ids if tid in fetched),
            failed=tuple(failed),
            unavailable=tuple(unavailable),
        )

    def modify_thread_labels(
        self,
        thread_id: str,
        *,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        body = {
            "addLabelIds": add_label_ids or [],
            "removeLabelIds": remove_label_ids or [],
        }
        request = self._service.users().threads().modify(
            userId=self._mailbox, id=thread_id, body=body
        )
        return self._execute_with_retry(request, f"modify labels of thread {thread_id}")

    def archive_thread(self, thread_id: str) -> None:
        """Archive a thread by removing the INBOX label.

        Raises:
            ArchiveActionError: The provider rejected the label change.
        """
        try:
            self.modify_thread_labels(thread_id, remove_label_ids=["INBOX"])
        except GmailSyncError as e:
            raise ArchiveActionError(f"Failed to archive thread {thread_id}: {e}") from e
