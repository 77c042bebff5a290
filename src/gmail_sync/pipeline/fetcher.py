"""Rate-limited batched thread fetch."""

from __future__ import annotations

import logging
import time

from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import FetchResult

logger = logging.getLogger(__name__)


class ThreadFetcher:
    """Fetches full threads in fixed-size batches with a pause between batches.

    Per-thread retry lives in ``GmailClient.fetch_threads``; a thread that
    still fails is reported in ``FetchResult.failed`` and never aborts the
    other batches. Threads the provider rejected outright pass through in
    ``FetchResult.unavailable``.
    """

    def __init__(self, batch_size: int = 5, inter_batch_delay_seconds: float = 1.0) -> None:
        self._batch_size = max(1, batch_size)
        self._delay = inter_batch_delay_seconds

    def fetch(self, client: GmailClient, thread_ids: list[str]) -> FetchResult:
        ids = list(dict.fromkeys(thread_ids))
        threads: list[dict] = []
        failed: list[str] = []
        unavailable: list[str] = []

        for start in range(0, len(ids), self._batch_size):
            if start > 0 and self._delay > 0:
                time.sleep(self._delay)

            batch = ids[start : start + self._batch_size]
            try:
                result = client.fetch_threads(batch)
            except Exception as e:
                logger.error("Batch fetch of %d threads failed: %s", len(batch), e)
                failed.extend(batch)
                continue

            threads.extend(result.threads)
            failed.extend(result.failed)
            unavailable.extend(result.unavailable)
            logger.debug("Fetched batch %d: %d ok, %d failed",
                         start // self._batch_size + 1, len(result.threads), len(result.failed))

        if failed:
            logger.warning("%d of %d threads could not be fetched", len(failed), len(ids))
        return FetchResult(
            threads=tuple(threads), failed=tuple(failed), unavailable=tuple(unavailable)
        )
