"""Builds persisted thread and message records from a parsed, classified thread."""

from __future__ import annotations

import logging
from datetime import datetime
from email.utils import getaddresses, parseaddr

import trafilatura

from gmail_sync.core.classifier import ThreadClassifier
from gmail_sync.core.models import (
    Classification,
    EmailBody,
    EmailMessage,
    MailThread,
    MessageRecord,
    ThreadRecord,
)
from gmail_sync.core.parser import EPOCH

logger = logging.getLogger(__name__)


def _emails(header_value: str) -> tuple[str, ...]:
    return tuple(email.lower() for _, email in getaddresses([header_value]) if email)


def _message_date(message: EmailMessage) -> datetime:
    return message.header.date if message.header else EPOCH


class ThreadConverter:
    """Turn a ``MailThread`` into a ``ThreadRecord`` and its ``MessageRecord`` rows.

    Thread aggregates are always recomputed from every message of the thread,
    so repeated conversion of the same payload yields the same record.
    """

    def __init__(self, classifier: ThreadClassifier, body_preview_chars: int = 500) -> None:
        self._classifier = classifier
        self._preview_chars = body_preview_chars

    def convert(
        self,
        user_id: str,
        thread: MailThread,
        classification: Classification,
        user_email: str = "",
    ) -> tuple[ThreadRecord, list[MessageRecord]]:
        messages = sorted(thread.messages, key=_message_date)
        participants, directly_addressed = self._classifier.split_participants(
            thread, user_email
        )

        labels: dict[str, None] = {}
        for message in messages:
            labels.update(dict.fromkeys(message.label_ids))

        first = messages[0]
        record = ThreadRecord(
            user_id=user_id,
            thread_id=thread.thread_id,
            subject=first.header.subject if first.header else "(no subject)",
            participants=participants,
            category=classification.category,
            is_directly_addressed=directly_addressed,
            gmail_labels=tuple(labels),
            is_unread=any("UNREAD" in m.label_ids for m in messages),
            has_attachments=any(m.has_attachments for m in messages),
            is_calendar_invite=classification.is_calendar_invite,
            message_count=len(messages),
            first_message_at=_message_date(messages[0]),
            last_message_at=_message_date(messages[-1]),
        )

        message_records = [
            self._message_record(user_id, thread.thread_id, m, classification)
            for m in messages
        ]
        return record, message_records

    def _message_record(
        self,
        user_id: str,
        thread_id: str,
        message: EmailMessage,
        classification: Classification,
    ) -> MessageRecord:
        header = message.header
        from_name, from_email = parseaddr(header.sender) if header else ("", "")
        return MessageRecord(
            user_id=user_id,
            message_id=message.message_id,
            thread_id=message.thread_id or thread_id,
            subject=header.subject if header else "(no subject)",
            from_email=from_email.lower() or (header.sender if header else ""),
            from_name=from_name.strip('"'),
            to_addresses=_emails(header.to) if header else (),
            cc_addresses=_emails(header.cc) if header else (),
            date=_message_date(message),
            snippet=message.snippet,
            body_preview=self.body_preview(message.body, message.snippet),
            labels=message.label_ids,
            category=classification.category,
            is_unread="UNREAD" in message.label_ids,
            has_attachments=message.has_attachments,
        )

    def body_preview(self, body: EmailBody | None, snippet: str = "") -> str:
        """Readable body text, truncated.

        Strategy:
        1. If HTML is available, extract its text via trafilatura
           (favor_recall=True for email layouts).
        2. Otherwise, or if extraction yields nothing, use the plain-text part.
        3. Fall back to the provider snippet.
        """
        text: str | None = None

        if body is not None and body.html:
            try:
                text = trafilatura.extract(
                    body.html,
                    output_format="txt",
                    favor_recall=True,
                    include_links=False,
                    include_tables=True,
                )
            except Exception as e:
                logger.warning("Trafilatura extraction failed: %s", e)
                text = None

        if not text and body is not None and body.plain_text:
            text = body.plain_text

        if not text:
            text = snippet

        return " ".join(text.split())[: self._preview_chars]
