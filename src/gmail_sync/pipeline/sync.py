"""Tick orchestrator: token → discovery → fetch → classify → persist → enrich, then outbox."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from datetime import timedelta

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.auth import OAuthRefresher, build_gmail_service
from gmail_sync.core.classifier import ThreadClassifier
from gmail_sync.core.converter import ThreadConverter
from gmail_sync.core.crypto import TokenCipher
from gmail_sync.core.exceptions import GmailSyncError, ParseError, UnauthorizedError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.locks import SQLiteMutex
from gmail_sync.core.models import (
    Credential,
    EnrichmentJob,
    EnrichmentReport,
    TickResult,
    UserSyncResult,
)
from gmail_sync.core.parser import GmailParser
from gmail_sync.core.tokens import TokenManager
from gmail_sync.enrichment.dispatcher import EnrichmentDispatcher, JobRunner
from gmail_sync.enrichment.llm import LLMClient
from gmail_sync.enrichment.prompt import TranscriptLimits
from gmail_sync.enrichment.worker import EnrichmentWorker
from gmail_sync.pipeline.discovery import ChangeDiscovery
from gmail_sync.pipeline.fetcher import ThreadFetcher
from gmail_sync.pipeline.outbox import ArchiveOutbox, ClientFactory
from gmail_sync.storage.archive_queue import ArchiveQueue
from gmail_sync.storage.credential_store import CredentialStore
from gmail_sync.storage.database import MailDatabase
from gmail_sync.storage.mail_store import MailStore
from gmail_sync.storage.quota import QuotaStore

logger = logging.getLogger(__name__)


def gmail_client_factory(settings: GmailSyncSettings) -> ClientFactory:
    """Build a ``GmailClient`` per access token with the configured retry policy."""

    def factory(access_token: str) -> GmailClient:
        service = build_gmail_service(access_token, settings.request_timeout_seconds)
        return GmailClient(
            service,
            max_attempts=settings.max_fetch_attempts,
            initial_backoff_seconds=settings.initial_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            inter_page_delay_seconds=settings.inter_page_delay_seconds,
        )

    return factory


def enrichment_runner(settings: GmailSyncSettings) -> JobRunner:
    """A job runner that opens its own database connection for each job."""
    llm = LLMClient.from_api_key(
        settings.anthropic_api_key.get_secret_value(),
        settings.llm_model,
        settings.llm_max_tokens,
        settings.llm_timeout_seconds,
    )
    limits = TranscriptLimits(
        max_messages=settings.transcript_max_messages,
        max_chars_per_message=settings.transcript_max_chars_per_message,
        max_chars=settings.transcript_max_chars,
    )

    def run(job: EnrichmentJob) -> EnrichmentReport:
        with MailDatabase(settings.database_path) as db:
            worker = EnrichmentWorker(
                MailStore(db),
                QuotaStore(db),
                llm,
                daily_limit=settings.summary_daily_limit,
                window_hours=settings.quota_window_hours,
                freshness=timedelta(minutes=settings.summary_freshness_minutes),
                limits=limits,
                organization_name=settings.organization_name,
            )
            return worker.process(job)

    return run


class MailSyncPipeline:
    """Runs one scheduler tick over every connected user.

    Users are synced one after another; any failure inside a user's sync is
    logged and counted, and the next user proceeds. The archive outbox is
    drained once after all users. Enrichment is handed to the dispatcher
    and never awaited.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        tokens: TokenManager,
        client_factory: ClientFactory,
        store: MailStore,
        outbox: ArchiveOutbox,
        discovery: ChangeDiscovery | None = None,
        fetcher: ThreadFetcher | None = None,
        classifier: ThreadClassifier | None = None,
        converter: ThreadConverter | None = None,
        parser: GmailParser | None = None,
        dispatcher: EnrichmentDispatcher | None = None,
        provider: str = "gmail",
        on_progress: Callable[[TickResult], None] | None = None,
    ) -> None:
        self._credentials = credentials
        self._tokens = tokens
        self._client_factory = client_factory
        self._store = store
        self._outbox = outbox
        self._discovery = discovery or ChangeDiscovery()
        self._fetcher = fetcher or ThreadFetcher()
        self._classifier = classifier or ThreadClassifier()
        self._converter = converter or ThreadConverter(self._classifier)
        self._parser = parser or GmailParser()
        self._dispatcher = dispatcher
        self._provider = provider
        self._on_progress = on_progress
        self._db: MailDatabase | None = None

    @classmethod
    def from_settings(
        cls,
        settings: GmailSyncSettings,
        *,
        on_progress: Callable[[TickResult], None] | None = None,
    ) -> MailSyncPipeline:
        """Wire every component from settings. The pipeline owns the database connection."""
        settings.ensure_directories()
        cipher = TokenCipher(settings.encryption_key.get_secret_value())

        db = MailDatabase(settings.database_path)
        db.connect()

        credentials = CredentialStore(db, cipher)
        store = MailStore(db)
        mutex = SQLiteMutex(
            db.conn,
            timeout_seconds=settings.lock_timeout_seconds,
            ttl_seconds=settings.lock_ttl_seconds,
            poll_seconds=settings.lock_poll_seconds,
        )
        refresher = OAuthRefresher(
            settings.google_client_id,
            settings.google_client_secret.get_secret_value(),
            settings.token_uri,
        )
        tokens = TokenManager(credentials, refresher, mutex)
        client_factory = gmail_client_factory(settings)
        classifier = ThreadClassifier(
            settings.organization_domain,
            settings.routing_addresses,
            settings.all_skip_labels,
        )

        dispatcher = None
        if settings.anthropic_api_key.get_secret_value():
            dispatcher = EnrichmentDispatcher(
                enrichment_runner(settings), max_workers=settings.enrichment_workers
            )
        else:
            logger.warning("No Anthropic API key configured, enrichment is disabled")

        pipeline = cls(
            credentials=credentials,
            tokens=tokens,
            client_factory=client_factory,
            store=store,
            outbox=ArchiveOutbox(
                ArchiveQueue(db),
                credentials,
                tokens,
                client_factory,
                store,
                provider=settings.provider,
                batch_limit=settings.archive_batch_limit,
                inter_call_delay_seconds=settings.archive_inter_call_delay_seconds,
            ),
            discovery=ChangeDiscovery(
                first_sync_max_messages=settings.first_sync_max_messages,
                first_sync_label=settings.first_sync_label or None,
                first_sync_query=settings.first_sync_query or None,
                max_results_per_page=settings.max_results_per_page,
            ),
            fetcher=ThreadFetcher(settings.fetch_batch_size, settings.inter_batch_delay_seconds),
            classifier=classifier,
            converter=ThreadConverter(classifier, settings.body_preview_chars),
            dispatcher=dispatcher,
            provider=settings.provider,
            on_progress=on_progress,
        )
        pipeline._db = db
        return pipeline

    def close(self, wait: bool = True) -> None:
        """Shut down the enrichment dispatcher and close an owned database."""
        if self._dispatcher is not None:
            self._dispatcher.shutdown(wait=wait)
        if self._db is not None:
            self._db.close()
            self._db = None

    def __enter__(self) -> MailSyncPipeline:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _notify(self, result: TickResult) -> None:
        if self._on_progress:
            self._on_progress(result)

    def run_tick(self) -> TickResult:
        """Sync every connected user, then drain the archive outbox."""
        result = TickResult(current_stage="sync")
        run_id = self._store.start_run()
        self._notify(result)

        try:
            credentials = self._credentials.list_credentials(self._provider)
            logger.info("Tick started for %d connected users", len(credentials))

            for credential in credentials:
                result.users_processed += 1
                try:
                    user_result = self.sync_user(credential)
                except Exception as e:
                    result.users_failed += 1
                    logger.error("Sync failed for user %s: %s", credential.user_id, e,
                                 exc_info=not isinstance(e, GmailSyncError))
                else:
                    result.users_succeeded += 1
                    result.threads_persisted += user_result.threads_persisted
                    result.threads_failed += user_result.threads_failed
                self._notify(result)

            result.current_stage = "archive"
            self._notify(result)
            try:
                result.archive = self._outbox.drain()
            except Exception:
                logger.exception("Archive outbox drain failed")

            result.current_stage = "complete"
            self._notify(result)
        except Exception as e:
            result.current_stage = f"error: {e}"
            self._notify(result)
            raise
        finally:
            self._store.complete_run(
                run_id,
                users_processed=result.users_processed,
                users_failed=result.users_failed,
                threads_persisted=result.threads_persisted,
                threads_failed=result.threads_failed,
                archive_completed=result.archive.completed,
                archive_failed=result.archive.failed,
            )

        logger.info(
            "Tick complete: %d users (%d ok, %d failed), %d threads persisted, "
            "%d archived",
            result.users_processed, result.users_succeeded, result.users_failed,
            result.threads_persisted, result.archive.completed,
        )
        return result

    def _refresh_labels(self, client: GmailClient, user_id: str) -> dict[str, str]:
        """Label id → name, refreshed from the provider, falling back to the cache."""
        try:
            self._store.upsert_labels(user_id, client.list_labels())
        except GmailSyncError as e:
            logger.warning("Could not refresh labels for user %s, using cache: %s", user_id, e)
        return self._store.get_label_names(user_id)

    def sync_user(self, credential: Credential) -> UserSyncResult:
        """Sync one user's mailbox.

        The cursor is recorded only after every fetched thread has gone
        through persistence. Threads that could not be fetched or saved are
        deferred to the next tick.

        Raises:
            AuthError: The user's token could not be refreshed.
            GmailSyncError: Discovery or cursor bookkeeping failed.
        """
        user_id = credential.user_id
        result = UserSyncResult(user_id=user_id)

        access_token = self._tokens.get_valid_access_token(credential)
        client = self._client_factory(access_token)
        label_names = self._refresh_labels(client, user_id)

        discovery = self._discovery.discover(client, credential.sync_cursor)
        result.full_scan = discovery.full_scan
        user_email = credential.account_email or discovery.account_email
        if discovery.account_email and discovery.account_email != credential.account_email:
            self._credentials.update_account_email(
                user_id, credential.provider, discovery.account_email
            )

        deferred = self._store.get_deferred_threads(user_id)
        candidates = list(dict.fromkeys(sorted(discovery.thread_ids) + deferred))
        result.threads_discovered = len(candidates)

        fetch = self._fetcher.fetch(client, candidates) if candidates else None
        retry_later: list[str] = list(fetch.failed) if fetch else []
        persisted: list[str] = []
        eligible: list[str] = []

        for raw_thread in fetch.threads if fetch else ():
            result.threads_fetched += 1
            thread_id = raw_thread.get("id", "?")
            try:
                thread = self._parser.parse_thread(raw_thread)
                classification = self._classifier.classify(thread, label_names)
                if not classification.keep:
                    logger.debug("Skipping thread %s: %s", thread_id,
                                 classification.skip_reason)
                    result.threads_filtered += 1
                    continue

                record, messages = self._converter.convert(
                    user_id, thread, classification, user_email
                )
                self._store.save_thread(record, messages)
            except ParseError as e:
                logger.error("Dropping unparseable thread %s: %s", thread_id, e)
                result.threads_failed += 1
                continue
            except Exception as e:
                logger.error("Failed to persist thread %s: %s", thread_id, e)
                result.threads_failed += 1
                retry_later.append(thread_id)
                continue

            persisted.append(record.thread_id)
            if not record.is_calendar_invite:
                eligible.append(record.thread_id)

        result.threads_failed += len(fetch.failed) if fetch else 0
        result.threads_persisted = len(persisted)
        if fetch and fetch.unavailable:
            # Not deferred; a deferred copy is cleared below.
            logger.info("User %s: dropping %d threads the provider no longer serves: %s",
                        user_id, len(fetch.unavailable), ", ".join(fetch.unavailable))

        self._store.clear_deferred_threads(
            user_id, [tid for tid in deferred if tid not in retry_later]
        )
        if retry_later:
            self._store.defer_threads(user_id, retry_later, reason="fetch or persist failed")
            logger.warning("Deferred %d threads of user %s to the next tick",
                           len(retry_later), user_id)

        if discovery.cursor:
            self._credentials.update_sync_cursor(
                user_id,
                credential.provider,
                discovery.cursor,
                allow_rewind=discovery.cursor_invalidated,
            )

        if self._dispatcher is not None and eligible:
            self._dispatcher.dispatch(
                EnrichmentJob(
                    user_id=user_id,
                    thread_ids=tuple(eligible),
                    user_email=user_email,
                    user_name=credential.display_name,
                )
            )
            result.threads_dispatched = len(eligible)

        logger.info(
            "User %s: %d candidates, %d persisted, %d filtered, %d failed%s",
            user_id, result.threads_discovered, result.threads_persisted,
            result.threads_filtered, result.threads_failed,
            " (full scan)" if result.full_scan else "",
        )
        return result


def run_scheduled_tick(settings: GmailSyncSettings, presented_key: str) -> TickResult:
    """Scheduler entry point: authorize the caller, run one tick.

    Raises:
        UnauthorizedError: ``presented_key`` does not match the service key.
    """
    expected = settings.service_key.get_secret_value()
    if not expected or not hmac.compare_digest(
        presented_key.encode("utf-8"), expected.encode("utf-8")
    ):
        raise UnauthorizedError("Scheduler credential rejected")

    pipeline = MailSyncPipeline.from_settings(settings)
    try:
        return pipeline.run_tick()
    finally:
        pipeline.close(wait=True)
