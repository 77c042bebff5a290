"""Gmail payload parser: MIME tree walking, base64url decoding, header extraction."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from gmail_sync.core.exceptions import ParseError
from gmail_sync.core.models import EmailBody, EmailHeader, EmailMessage, MailThread

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_WANTED_HEADERS = ("subject", "from", "to", "cc", "date", "delivered-to", "message-id")


@dataclass
class _MimeScan:
    """What one pass over a message's MIME tree found."""

    plain_text: str | None = None
    html: str | None = None
    mime_types: list[str] = field(default_factory=list)
    has_attachments: bool = False


class GmailParser:
    """Parses raw Gmail API thread and message dicts into domain objects."""

    def parse_thread(self, raw_thread: dict[str, Any]) -> MailThread:
        """Parse a threads.get(format=full) payload.

        Raises:
            ParseError: If the thread or any of its messages is malformed.
        """
        thread_id = raw_thread.get("id")
        if not thread_id:
            raise ParseError("Thread payload has no id")

        messages = tuple(self.parse(raw) for raw in raw_thread.get("messages", []))
        if not messages:
            raise ParseError(f"Thread {thread_id} has no messages")

        return MailThread(
            thread_id=thread_id,
            messages=messages,
            history_id=str(raw_thread.get("historyId", "")),
        )

    def parse(self, raw_message: dict[str, Any]) -> EmailMessage:
        """Parse one message of a thread payload.

        Raises:
            ParseError: The message has no id or its payload is malformed.
        """
        if "id" not in raw_message:
            raise ParseError("Message payload has no id")
        message_id = raw_message["id"]

        try:
            payload = raw_message.get("payload") or {}
            scan = _MimeScan()
            self._scan(payload, scan)
            if scan.plain_text is None and scan.html is None:
                self._use_top_level_body(payload, scan)

            return EmailMessage(
                message_id=message_id,
                thread_id=raw_message.get("threadId", ""),
                label_ids=tuple(raw_message.get("labelIds", [])),
                header=self._extract_headers(payload),
                body=EmailBody(plain_text=scan.plain_text, html=scan.html),
                snippet=raw_message.get("snippet", ""),
                has_attachments=scan.has_attachments,
                mime_types=tuple(dict.fromkeys(scan.mime_types)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Failed to parse message {message_id}: {e}") from e

    def _extract_headers(self, payload: dict[str, Any]) -> EmailHeader:
        found: dict[str, str] = {}
        for header in payload.get("headers", []):
            key = header.get("name", "").lower()
            # First occurrence wins; Delivered-To can repeat on forwarded mail.
            if key in _WANTED_HEADERS:
                found.setdefault(key, header.get("value", ""))

        return EmailHeader(
            subject=found.get("subject", "(no subject)"),
            sender=found.get("from", ""),
            to=found.get("to", ""),
            date=self._parse_date(found.get("date", "")),
            cc=found.get("cc", ""),
            delivered_to=found.get("delivered-to", ""),
            message_id_header=found.get("message-id", ""),
        )

    def _scan(self, part: dict[str, Any], scan: _MimeScan, in_attachment: bool = False) -> None:
        """Depth-first walk recording MIME types, attachments and the first text bodies.

        Text inside an attachment (a part with a filename, or below one) is
        never taken as the message body.
        """
        mime_type = part.get("mimeType", "").lower()
        if mime_type:
            scan.mime_types.append(mime_type)

        if part.get("filename"):
            scan.has_attachments = True
            in_attachment = True

        data = part.get("body", {}).get("data")
        if data and not in_attachment:
            if mime_type == "text/plain" and scan.plain_text is None:
                scan.plain_text = self._decode_body(data)
            elif mime_type == "text/html" and scan.html is None:
                scan.html = self._decode_body(data)

        for child in part.get("parts", []):
            self._scan(child, scan, in_attachment)

    def _use_top_level_body(self, payload: dict[str, Any], scan: _MimeScan) -> None:
        data = payload.get("body", {}).get("data")
        if not data:
            return
        if "html" in payload.get("mimeType", "").lower():
            scan.html = self._decode_body(data)
        else:
            scan.plain_text = self._decode_body(data)

    @staticmethod
    def _decode_body(data: str) -> str:
        # base64url, usually without padding
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _parse_date(value: str) -> datetime:
        """Parse an RFC 2822 date into an aware datetime; epoch if unparseable."""
        if not value:
            return EPOCH
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header: %r", value)
            return EPOCH
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
