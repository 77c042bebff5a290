"""Thread classification: skip filtering, calendar-invite detection, category and participants."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from email.utils import getaddresses, parseaddr

from gmail_sync.core.models import (
    CATEGORIES,
    Category,
    Classification,
    EmailMessage,
    MailThread,
    Participant,
)

logger = logging.getLogger(__name__)

CALENDAR_SUBJECT_PREFIXES = (
    "invitation:",
    "updated invitation:",
    "accepted:",
    "declined:",
    "tentatively accepted:",
    "canceled event:",
    "cancelled event:",
    "new event:",
)
CALENDAR_SUBJECT_PHRASES = (
    "invitation from google calendar",
    "has invited you",
    "you have been invited",
    "event invitation",
    "meeting invitation",
)
CALENDAR_SENDER_PATTERNS = (
    re.compile(r"^calendar-notification@google\.com$"),
    re.compile(r"@calendar-server\.bounces\.google\.com$"),
    re.compile(r"@calendar\.google\.com$"),
    re.compile(r"^noreply@calendly\.com$"),
    re.compile(r"@(?:[\w-]+\.)?calendar\.outlook\.com$"),
)
CALENDAR_MIME_TYPES = ("text/calendar", "application/ics")
CALENDAR_SNIPPET_PHRASES = ("view event", "going?", "when:", "where:", "join with google meet")

# Tried in order; first hit wins.
SUBJECT_KEYWORDS: tuple[tuple[Category, tuple[str, ...]], ...] = (
    ("onboarding", ("welcome", "getting started", "onboarding")),
    ("support", ("support", "help")),
)
LABEL_KEYWORDS: tuple[tuple[Category, str], ...] = (
    ("onboarding", "onboarding"),
    ("support", "support"),
)


def _addresses(*header_values: str) -> list[tuple[str, str]]:
    """(name, lowercased email) pairs from one or more address-list headers."""
    return [
        (name.strip().strip('"'), email.strip().lower())
        for name, email in getaddresses([v for v in header_values if v])
        if email
    ]


def _domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower() if "@" in email else ""


class ThreadClassifier:
    """Pure classification over a parsed thread.

    Args:
        organization_domain: Addresses in this domain (or its subdomains) are internal.
        routing_addresses: Recipient address → category, e.g. ``support@acme.io`` → ``support``.
        skip_labels: Label ids that drop the whole thread.
    """

    def __init__(
        self,
        organization_domain: str = "",
        routing_addresses: Mapping[str, str] | None = None,
        skip_labels: Iterable[str] = (),
    ) -> None:
        self._org_domain = organization_domain.lower().lstrip("@")
        self._routing: dict[str, Category] = {}
        for address, category in (routing_addresses or {}).items():
            if category not in CATEGORIES:
                logger.warning("Ignoring routing address %s with unknown category %s",
                               address, category)
                continue
            self._routing[address.strip().lower()] = category  # type: ignore[assignment]
        self._skip_labels = frozenset(skip_labels)

    def classify(
        self, thread: MailThread, label_names: Mapping[str, str] | None = None
    ) -> Classification:
        """Decide whether to keep a thread, and with which category.

        Args:
            thread: Parsed thread with at least one message.
            label_names: Label id → display name, for user-defined labels.
        """
        for message in thread.messages:
            skipped = self._skip_labels.intersection(message.label_ids)
            if skipped:
                return Classification(
                    keep=False, skip_reason=f"label {sorted(skipped)[0]}"
                )

        is_invite = bool(thread.messages) and self.is_calendar_invite(thread.messages[0])
        return Classification(
            keep=True,
            category=self._categorize(thread, label_names or {}),
            is_calendar_invite=is_invite,
        )

    def is_calendar_invite(self, message: EmailMessage) -> bool:
        header = message.header
        subject = header.subject.lower().strip() if header else ""
        sender = parseaddr(header.sender)[1].lower() if header else ""
        snippet = message.snippet.lower()

        if subject.startswith(CALENDAR_SUBJECT_PREFIXES):
            return True
        if any(phrase in subject for phrase in CALENDAR_SUBJECT_PHRASES):
            return True
        if sender and any(p.search(sender) for p in CALENDAR_SENDER_PATTERNS):
            return True
        if any(m in CALENDAR_MIME_TYPES for m in message.mime_types):
            return True
        return any(phrase in snippet for phrase in CALENDAR_SNIPPET_PHRASES)

    def _categorize(self, thread: MailThread, label_names: Mapping[str, str]) -> Category:
        # 1. Routing address among the recipients
        for message in thread.messages:
            if message.header is None:
                continue
            h = message.header
            for _, email in _addresses(h.to, h.cc, h.delivered_to):
                if email in self._routing:
                    return self._routing[email]

        # 2. Label name
        names = " ".join(
            label_names.get(label_id, label_id).lower()
            for message in thread.messages
            for label_id in message.label_ids
        )
        for category, keyword in LABEL_KEYWORDS:
            if keyword in names:
                return category

        # 3. Subject keyword
        subjects = " ".join(
            m.header.subject.lower() for m in thread.messages if m.header is not None
        )
        for category, keywords in SUBJECT_KEYWORDS:
            if any(keyword in subjects for keyword in keywords):
                return category

        return "general"

    def is_internal(self, email: str) -> bool:
        if not self._org_domain:
            return False
        domain = _domain(email)
        return domain == self._org_domain or domain.endswith("." + self._org_domain)

    def split_participants(
        self, thread: MailThread, user_email: str
    ) -> tuple[tuple[Participant, ...], bool]:
        """Ordered, de-duplicated participants and the "directly addressed" flag.

        Participants appear in order of first occurrence (From, then To, then Cc
        of each message). The flag is True if ``user_email`` is in To or Cc of
        any message.
        """
        me = user_email.strip().lower()
        seen: dict[str, Participant] = {}
        directly_addressed = False

        for message in thread.messages:
            h = message.header
            if h is None:
                continue
            recipients = _addresses(h.to, h.cc)
            if me and any(email == me for _, email in recipients):
                directly_addressed = True
            for name, email in _addresses(h.sender) + recipients:
                existing = seen.get(email)
                if existing is None:
                    role = "internal" if self.is_internal(email) else "external"
                    seen[email] = Participant(email=email, name=name, role=role)
                elif name and not existing.name:
                    seen[email] = Participant(email=email, name=name, role=existing.role)

        return tuple(seen.values()), directly_addressed
