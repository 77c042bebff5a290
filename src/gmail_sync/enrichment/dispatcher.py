"""Fire-and-forget hand-off of enrichment jobs to a background executor."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from gmail_sync.core.models import EnrichmentJob, EnrichmentReport

logger = logging.getLogger(__name__)

JobRunner = Callable[[EnrichmentJob], EnrichmentReport]


class EnrichmentDispatcher:
    """Runs enrichment jobs off the sync path.

    ``dispatch`` returns immediately. Outcomes and failures of a job are
    reported through this module's logger, never back to the caller.
    The runner is responsible for its own resources (database connection,
    LLM client), since it executes on a different thread than the tick.
    """

    def __init__(self, runner: JobRunner, max_workers: int = 1) -> None:
        self._runner = runner
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="enrichment"
        )
        self._pending: set[Future[EnrichmentReport]] = set()

    def dispatch(self, job: EnrichmentJob) -> Future[EnrichmentReport] | None:
        if not job.thread_ids:
            return None
        try:
            future = self._executor.submit(self._runner, job)
        except RuntimeError as e:
            logger.error("Could not dispatch enrichment for user %s: %s", job.user_id, e)
            return None

        self._pending.add(future)
        future.add_done_callback(lambda f, job=job: self._on_done(job, f))
        logger.info("Dispatched %d threads for enrichment (user %s)",
                    len(job.thread_ids), job.user_id)
        return future

    def _on_done(self, job: EnrichmentJob, future: Future[EnrichmentReport]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            logger.warning("Enrichment for user %s was cancelled", job.user_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Enrichment job for user %s failed: %s", job.user_id, exc,
                         exc_info=exc)
            return
        report = future.result()
        logger.info("Enrichment job for user %s finished: %s", job.user_id, report)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally block until running ones finish."""
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> EnrichmentDispatcher:
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown(wait=True)
