"""Frozen dataclasses for the Gmail Sync domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

Category = Literal["onboarding", "support", "general"]
ParticipantRole = Literal["internal", "external"]
ArchiveStatus = Literal["pending", "completed", "failed"]

CATEGORIES: frozenset[str] = frozenset({"onboarding", "support", "general"})
CUSTOMER_FACING_CATEGORIES: frozenset[str] = frozenset({"onboarding", "support"})


@dataclass(frozen=True)
class MessageStub:
    """Message and thread id pair from a messages.list page."""

    message_id: str
    thread_id: str


@dataclass(frozen=True)
class Credential:
    """Decrypted OAuth credential for one (user, provider) pair."""

    user_id: str
    provider: str
    refresh_token: str
    access_token: str
    expires_at: datetime
    sync_cursor: str | None = None
    account_email: str = ""
    display_name: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class EmailHeader:
    """Header values the classifier and converter read."""

    subject: str
    sender: str
    to: str
    date: datetime
    cc: str = ""
    delivered_to: str = ""
    message_id_header: str = ""


@dataclass(frozen=True)
class EmailBody:
    """Parsed email body content. Either field may be None."""

    plain_text: str | None = None
    html: str | None = None


@dataclass(frozen=True)
class EmailMessage:
    """Complete parsed email with headers, body and MIME metadata."""

    message_id: str
    thread_id: str
    label_ids: tuple[str, ...] = field(default_factory=tuple)
    header: EmailHeader | None = None
    body: EmailBody | None = None
    snippet: str = ""
    has_attachments: bool = False
    mime_types: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MailThread:
    """A parsed conversation: all constituent messages in provider order."""

    thread_id: str
    messages: tuple[EmailMessage, ...] = field(default_factory=tuple)
    history_id: str = ""


@dataclass(frozen=True)
class Participant:
    """A thread participant with an organization-relative role."""

    email: str
    name: str = ""
    role: ParticipantRole = "external"


@dataclass(frozen=True)
class Classification:
    """Classifier verdict for a fetched thread."""

    keep: bool
    category: Category = "general"
    is_calendar_invite: bool = False
    skip_reason: str = ""


@dataclass(frozen=True)
class ThreadRecord:
    """Thread row aggregated from the full set of its messages."""

    user_id: str
    thread_id: str
    subject: str
    participants: tuple[Participant, ...]
    category: Category
    is_directly_addressed: bool
    gmail_labels: tuple[str, ...]
    is_unread: bool
    has_attachments: bool
    is_calendar_invite: bool
    message_count: int
    first_message_at: datetime
    last_message_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    """Message row as persisted."""

    user_id: str
    message_id: str
    thread_id: str
    subject: str
    from_email: str
    from_name: str
    to_addresses: tuple[str, ...]
    cc_addresses: tuple[str, ...]
    date: datetime
    snippet: str
    body_preview: str
    labels: tuple[str, ...]
    category: Category
    is_unread: bool
    has_attachments: bool


@dataclass(frozen=True)
class DiscoveryResult:
    """Candidate threads for a tick plus the cursor to record afterwards."""

    thread_ids: frozenset[str]
    cursor: str | None
    full_scan: bool = False
    cursor_invalidated: bool = False
    account_email: str = ""


@dataclass(frozen=True)
class FetchResult:
    """Raw thread payloads that were fetched, and the ids that were not.

    ``failed`` ids may succeed on a later tick; ``unavailable`` ids were
    rejected outright (deleted, or not visible to this account).
    """

    threads: tuple[dict, ...] = field(default_factory=tuple)
    failed: tuple[str, ...] = field(default_factory=tuple)
    unavailable: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EnrichmentJob:
    """Threads handed to the enrichment worker for one user."""

    user_id: str
    thread_ids: tuple[str, ...]
    user_email: str = ""
    user_name: str | None = None


@dataclass(frozen=True)
class ArchiveQueueItem:
    """One requested provider-side archive action."""

    id: int
    user_id: str
    thread_id: str
    status: ArchiveStatus
    attempts: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None
    next_retry_at: datetime | None = None


@dataclass
class UserSyncResult:
    """Mutable per-user counters for one tick."""

    user_id: str
    threads_discovered: int = 0
    threads_fetched: int = 0
    threads_filtered: int = 0
    threads_persisted: int = 0
    threads_failed: int = 0
    threads_dispatched: int = 0
    full_scan: bool = False


@dataclass
class EnrichmentReport:
    """Mutable per-job outcome counts for the enrichment worker."""

    enriched: int = 0
    rate_limited: int = 0
    fresh: int = 0
    missing: int = 0
    ineligible: int = 0
    failed: int = 0


@dataclass
class OutboxResult:
    """Mutable outcome counts for one archive outbox drain."""

    processed: int = 0
    completed: int = 0
    failed: int = 0


@dataclass
class TickResult:
    """Mutable summary of one scheduler tick."""

    users_processed: int = 0
    users_succeeded: int = 0
    users_failed: int = 0
    threads_persisted: int = 0
    threads_failed: int = 0
    archive: OutboxResult = field(default_factory=OutboxResult)
    current_stage: str = "idle"
