"""Enrichment worker: quota, freshness, LLM call, validation and guarded write-back."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Literal

from gmail_sync.core.exceptions import EnrichmentError
from gmail_sync.core.models import EnrichmentJob, EnrichmentReport
from gmail_sync.enrichment.llm import LLMClient
from gmail_sync.enrichment.prompt import TranscriptLimits, build_prompt
from gmail_sync.enrichment.schema import ThreadEnrichment, extract_json
from gmail_sync.storage.mail_store import MailStore
from gmail_sync.storage.quota import GENERATE_SUMMARY, QuotaStore

logger = logging.getLogger(__name__)

Outcome = Literal["enriched", "rate_limited", "fresh", "missing", "ineligible"]


class EnrichmentWorker:
    """Summarizes threads one at a time; a failing thread never stops the job."""

    def __init__(
        self,
        store: MailStore,
        quota: QuotaStore,
        llm: LLMClient,
        *,
        daily_limit: int = 100,
        window_hours: int = 24,
        freshness: timedelta = timedelta(hours=1),
        limits: TranscriptLimits | None = None,
        organization_name: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._quota = quota
        self._llm = llm
        self._daily_limit = daily_limit
        self._window_hours = window_hours
        self._freshness = freshness
        self._limits = limits or TranscriptLimits()
        self._organization_name = organization_name
        self._clock = clock or (lambda: datetime.now(UTC))

    def process(self, job: EnrichmentJob) -> EnrichmentReport:
        report = EnrichmentReport()
        logger.info("Enriching %d threads for user %s", len(job.thread_ids), job.user_id)

        for thread_id in job.thread_ids:
            try:
                outcome = self._process_thread(job, thread_id)
            except EnrichmentError as e:
                logger.error("Enrichment failed for thread %s: %s", thread_id, e)
                report.failed += 1
                continue
            except Exception:
                logger.exception("Unexpected error enriching thread %s", thread_id)
                report.failed += 1
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(
            "Enrichment for user %s: %d enriched, %d rate limited, %d fresh, %d failed",
            job.user_id, report.enriched, report.rate_limited, report.fresh, report.failed,
        )
        return report

    def _process_thread(self, job: EnrichmentJob, thread_id: str) -> Outcome:
        user_id = job.user_id
        now = self._clock()

        if not self._quota.check_rate_limit(
            user_id, GENERATE_SUMMARY, self._daily_limit, self._window_hours, now=now
        ):
            logger.warning("Summary quota reached for user %s, skipping thread %s",
                           user_id, thread_id)
            return "rate_limited"

        thread = self._store.get_thread(user_id, thread_id)
        if thread is None:
            logger.warning("Thread %s not found for user %s", thread_id, user_id)
            return "missing"
        if thread["is_calendar_invite"]:
            return "ineligible"

        generated_at = thread.get("summary_generated_at")
        if thread.get("summary") and generated_at:
            age = now - datetime.fromisoformat(generated_at)
            if age < self._freshness:
                logger.debug("Skipping thread %s, summary is %s old", thread_id, age)
                return "fresh"

        messages = self._store.get_thread_messages(user_id, thread_id)
        if not messages:
            logger.warning("No messages stored for thread %s", thread_id)
            return "missing"

        system, prompt = build_prompt(
            messages=messages,
            category=thread["category"],
            participants=thread["participants"],
            user_email=job.user_email,
            user_name=job.user_name,
            organization_name=self._organization_name,
            is_calendar_invite=thread["is_calendar_invite"],
            limits=self._limits,
        )
        raw = self._llm.complete(system, prompt)
        enrichment = ThreadEnrichment.from_model_output(
            extract_json(raw),
            category=thread["category"],
            is_calendar_invite=thread["is_calendar_invite"],
        )

        written = self._store.update_enrichment(
            user_id,
            thread_id,
            enrichment.to_columns(),
            generated_at=self._clock(),
            freshness=self._freshness,
        )
        if not written:
            # Another worker wrote a fresh summary meanwhile.
            return "fresh"

        self._quota.track_usage(user_id, GENERATE_SUMMARY, 1, now=now)
        logger.debug("Enriched thread %s (topic=%s)", thread_id, enrichment.topic)
        return "enriched"
