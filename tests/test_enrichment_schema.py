"""Tests for model-output JSON extraction, validation and the prompt builder."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from gmail_sync.core.exceptions import EnrichmentParseError
from gmail_sync.enrichment.prompt import TranscriptLimits, build_prompt, build_transcript
from gmail_sync.enrichment.schema import ThreadEnrichment, extract_json


class TestExtractJson:
    """Bare JSON, fenced JSON and JSON embedded in prose."""

    def test_bare_json(self) -> None:
        assert extract_json('{"summary": "ok"}') == {"summary": "ok"}

    def test_fenced_json(self) -> None:
        text = 'Here you go:\n```json\n{"summary": "ok", "labels": ["a"]}\n```\nThanks!'

        assert extract_json(text) == {"summary": "ok", "labels": ["a"]}

    def test_fence_without_language(self) -> None:
        assert extract_json('```\n{"summary": "ok"}\n```') == {"summary": "ok"}

    def test_embedded_in_prose_with_braces_in_strings(self) -> None:
        text = 'Sure. {"summary": "uses {curly} braces", "topic": "other"} Hope this helps.'

        assert extract_json(text) == {"summary": "uses {curly} braces", "topic": "other"}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", '{"summary": '])
    def test_no_object_raises(self, text: str) -> None:
        with pytest.raises(EnrichmentParseError):
            extract_json(text)


class TestThreadEnrichment:
    """Per-field defaulting and context rules."""

    def test_full_payload(self) -> None:
        data = {
            "summary": " Customer's Slack sync is broken. ",
            "topic": "Integration_Issue",
            "labels": ["slack", "", 3, "sync"],
            "actionItems": [
                {"description": "Check Slack webhook", "dueDate": "2025-01-10", "priority": "HIGH"},
                "Reply to Jane",
                {"priority": "low"},
            ],
            "integrationName": "Slack",
            "satisfactionScore": 3,
            "satisfactionAnalysis": "Frustrated by the delay",
            "isEscalation": True,
            "escalationReason": "Customer blocked",
            "escalationType": "customer",
            "status": "waiting",
        }

        result = ThreadEnrichment.from_model_output(
            data, category="support", is_calendar_invite=False
        )

        assert result.summary == "Customer's Slack sync is broken."
        assert result.topic == "integration_issue"
        assert result.labels == ["slack", "sync"]
        assert [a.description for a in result.action_items] == [
            "Check Slack webhook", "Reply to Jane"
        ]
        assert result.action_items[0].priority == "high"
        assert result.action_items[1].priority == "medium"
        assert result.action_items[1].due_date is None
        assert result.satisfaction_score == 3
        assert result.is_escalation is True
        assert result.escalation_type == "customer"
        assert result.status == "waiting"

    def test_summary_only_gets_defaults(self) -> None:
        result = ThreadEnrichment.from_model_output(
            {"summary": "Lunch plans"}, category="general", is_calendar_invite=False
        )

        assert result.topic == "other"
        assert result.labels == []
        assert result.action_items == []
        assert result.status == "active"
        assert result.is_escalation is False
        assert result.billing_status is None

    @pytest.mark.parametrize("data", [{}, {"summary": ""}, {"summary": "   "}, {"summary": 42}])
    def test_missing_summary_raises(self, data: dict) -> None:
        with pytest.raises(EnrichmentParseError):
            ThreadEnrichment.from_model_output(data, category="general", is_calendar_invite=False)

    def test_malformed_fields_fall_back(self) -> None:
        data = {
            "summary": "s",
            "topic": "weather",
            "labels": "not-a-list",
            "actionItems": {"description": "x"},
            "satisfactionScore": 11,
            "isEscalation": "yes",
            "escalationType": "manager",
            "status": "closed",
            "isBilling": True,
            "billingStatus": "overdue",
        }

        result = ThreadEnrichment.from_model_output(
            data, category="support", is_calendar_invite=False
        )

        assert result.topic == "other"
        assert result.labels == []
        assert result.action_items == []
        assert result.satisfaction_score is None
        assert result.is_escalation is False
        assert result.escalation_type is None
        assert result.status == "active"
        assert result.is_billing is True
        assert result.billing_status is None

    def test_calendar_invite_never_escalated(self) -> None:
        data = {"summary": "Invite", "isEscalation": True, "escalationReason": "urgent",
                "escalationType": "team"}

        result = ThreadEnrichment.from_model_output(
            data, category="general", is_calendar_invite=True
        )

        assert result.is_escalation is False
        assert result.escalation_reason is None
        assert result.escalation_type is None

    def test_escalation_details_cleared_when_not_escalated(self) -> None:
        data = {"summary": "s", "isEscalation": False, "escalationReason": "leftover"}

        result = ThreadEnrichment.from_model_output(
            data, category="support", is_calendar_invite=False
        )

        assert result.escalation_reason is None

    def test_satisfaction_dropped_for_general(self) -> None:
        data = {"summary": "s", "satisfactionScore": 8, "satisfactionAnalysis": "happy"}

        result = ThreadEnrichment.from_model_output(
            data, category="general", is_calendar_invite=False
        )

        assert result.satisfaction_score is None
        assert result.satisfaction_analysis is None

    def test_billing_status_requires_billing(self) -> None:
        data = {"summary": "s", "isBilling": False, "billingStatus": "sent"}

        result = ThreadEnrichment.from_model_output(
            data, category="general", is_calendar_invite=False
        )

        assert result.billing_status is None

    def test_to_columns(self) -> None:
        data = {
            "summary": "s",
            "topic": "billing_question",
            "labels": ["invoice"],
            "actionItems": [{"description": "Send invoice", "dueDate": "2025-02-01"}],
            "isBilling": True,
            "billingStatus": "sent",
        }
        enrichment = ThreadEnrichment.from_model_output(
            data, category="onboarding", is_calendar_invite=False
        )

        columns = enrichment.to_columns()

        assert columns["ai_topic"] == "billing_question"
        assert columns["ai_labels"] == ["invoice"]
        assert columns["action_items"] == [
            {"description": "Send invoice", "dueDate": "2025-02-01", "priority": "medium"}
        ]
        assert columns["is_billing"] is True
        assert columns["billing_status"] == "sent"


def message_row(i: int, body: str = "body", **overrides) -> dict:
    row = {
        "from_name": f"Sender {i}",
        "from_email": f"s{i}@example.com",
        "subject": "Topic",
        "date": datetime(2025, 1, i, 9, 0, tzinfo=UTC).isoformat(),
        "body_preview": body,
        "snippet": "",
    }
    row.update(overrides)
    return row


class TestBuildTranscript:
    """Chronological blocks within message and character budgets."""

    def test_format(self) -> None:
        transcript = build_transcript([message_row(1, "Hello")], TranscriptLimits())

        assert transcript == (
            "Message 1 (2025-01-01 09:00):\n"
            "From: Sender 1 <s1@example.com>\n"
            "Subject: Topic\n"
            "Hello\n---"
        )

    def test_keeps_most_recent_messages(self) -> None:
        messages = [message_row(i) for i in range(1, 6)]

        transcript = build_transcript(messages, TranscriptLimits(max_messages=2))

        assert transcript.startswith("(3 earlier message(s) omitted)")
        assert "Message 4" in transcript and "Message 5" in transcript
        assert "Message 3" not in transcript

    def test_truncates_long_bodies(self) -> None:
        transcript = build_transcript(
            [message_row(1, "x" * 50)], TranscriptLimits(max_chars_per_message=10)
        )

        assert "x" * 10 + "…" in transcript
        assert "x" * 11 not in transcript

    def test_total_budget_drops_oldest(self) -> None:
        messages = [message_row(i, "y" * 100) for i in range(1, 4)]

        transcript = build_transcript(messages, TranscriptLimits(max_chars=300))

        assert "Message 1 " not in transcript
        assert "Message 3" in transcript
        assert "omitted" in transcript

    def test_falls_back_to_snippet(self) -> None:
        transcript = build_transcript(
            [message_row(1, "", snippet="from snippet")], TranscriptLimits()
        )

        assert "from snippet" in transcript


class TestBuildPrompt:
    """Category- and invite-dependent instructions."""

    def test_customer_facing_asks_for_satisfaction(self) -> None:
        system, prompt = build_prompt(
            messages=[message_row(1)],
            category="support",
            participants=[{"email": "jane@customer.com", "name": "Jane", "role": "external"}],
            user_email="me@acme.io",
            user_name="Me",
            organization_name="Acme",
        )

        assert "JSON" in system
        assert "satisfactionScore" in prompt
        assert "Me <me@acme.io>" in prompt
        assert "- Jane <jane@customer.com> (external)" in prompt
        assert "Thread category: support." in prompt

    def test_general_thread_omits_satisfaction(self) -> None:
        _, prompt = build_prompt(messages=[message_row(1)], category="general", participants=[])

        assert "satisfactionScore" not in prompt
        assert "- (none recorded)" in prompt

    def test_calendar_invite_note(self) -> None:
        _, prompt = build_prompt(
            messages=[message_row(1)], category="general", participants=[],
            is_calendar_invite=True,
        )

        assert "never an escalation" in prompt
