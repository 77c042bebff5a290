"""Tests for GmailParser against fixture thread payloads."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from typing import Any

import pytest

from gmail_sync.core.exceptions import ParseError
from gmail_sync.core.parser import EPOCH, GmailParser


@pytest.fixture
def parser() -> GmailParser:
    return GmailParser()


class TestParseThread:
    """Thread-level parsing."""

    def test_parses_all_messages_in_order(
        self, parser: GmailParser, support_thread_raw: dict[str, Any]
    ) -> None:
        thread = parser.parse_thread(support_thread_raw)

        assert thread.thread_id == "T1"
        assert thread.history_id == "104"
        assert [m.message_id for m in thread.messages] == ["m1", "m2", "m3"]

    def test_missing_id_raises(self, parser: GmailParser) -> None:
        with pytest.raises(ParseError):
            parser.parse_thread({"messages": []})

    def test_thread_without_messages_raises(self, parser: GmailParser) -> None:
        with pytest.raises(ParseError, match="no messages"):
            parser.parse_thread({"id": "T0", "messages": []})


class TestParseMessage:
    """Headers, bodies and MIME metadata."""

    def test_simple_plain_text(self, parser: GmailParser, support_thread_raw: dict[str, Any]) -> None:
        msg = parser.parse(support_thread_raw["messages"][0])

        assert msg.header.subject == "Slack integration not syncing"
        assert msg.header.sender == "Jane Customer <jane@customer.com>"
        assert msg.header.to == "support@acme.io"
        assert msg.header.delivered_to == "me@acme.io"
        assert msg.header.message_id_header == "<m1@customer.com>"
        assert msg.body.plain_text.startswith("Hi team, our Slack integration")
        assert msg.body.html is None
        assert msg.has_attachments is False
        assert msg.mime_types == ("text/plain",)

    def test_multipart_alternative(
        self, parser: GmailParser, support_thread_raw: dict[str, Any]
    ) -> None:
        msg = parser.parse(support_thread_raw["messages"][1])

        assert msg.body.plain_text.startswith("Thanks for reporting")
        assert "<p>Thanks for reporting" in msg.body.html
        assert msg.mime_types == ("multipart/alternative", "text/plain", "text/html")

    def test_attachment_detected_and_skipped_from_body(
        self, parser: GmailParser, support_thread_raw: dict[str, Any]
    ) -> None:
        msg = parser.parse(support_thread_raw["messages"][2])

        assert msg.has_attachments is True
        assert msg.body.plain_text == "Any update? We need this fixed by Friday."
        assert "image/png" in msg.mime_types
        assert msg.label_ids == ("INBOX", "UNREAD", "Label_42")

    def test_calendar_part_recorded(
        self, parser: GmailParser, calendar_thread_raw: dict[str, Any]
    ) -> None:
        msg = parser.parse(calendar_thread_raw["messages"][0])

        assert "text/calendar" in msg.mime_types
        assert msg.has_attachments is True

    def test_dates_are_timezone_aware(
        self, parser: GmailParser, support_thread_raw: dict[str, Any]
    ) -> None:
        msg = parser.parse(support_thread_raw["messages"][1])

        assert msg.header.date == datetime(2025, 1, 6, 11, 30, tzinfo=timezone(timedelta(hours=1)))
        assert msg.header.date.astimezone(UTC).hour == 10

    def test_missing_headers_use_defaults(self, parser: GmailParser) -> None:
        msg = parser.parse({"id": "x", "payload": {"mimeType": "text/plain", "headers": []}})

        assert msg.header.subject == "(no subject)"
        assert msg.header.date == EPOCH
        assert msg.body.plain_text is None

    def test_unparseable_date_falls_back_to_epoch(self, parser: GmailParser) -> None:
        raw = {
            "id": "x",
            "payload": {"headers": [{"name": "Date", "value": "not a date"}]},
        }

        assert parser.parse(raw).header.date == EPOCH

    def test_missing_id_raises(self, parser: GmailParser) -> None:
        with pytest.raises(ParseError):
            parser.parse({"payload": {}})
