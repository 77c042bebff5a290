"""Gmail Sync - Incremental Gmail thread sync with AI enrichment and an archive outbox."""

from gmail_sync.core.models import (
    ArchiveQueueItem,
    Classification,
    Credential,
    EmailMessage,
    EnrichmentJob,
    MailThread,
    TickResult,
    UserSyncResult,
)
from gmail_sync.pipeline.sync import MailSyncPipeline, run_scheduled_tick

__all__ = [
    "ArchiveQueueItem",
    "Classification",
    "Credential",
    "EmailMessage",
    "EnrichmentJob",
    "MailSyncPipeline",
    "MailThread",
    "TickResult",
    "UserSyncResult",
    "run_scheduled_tick",
]
