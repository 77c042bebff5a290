"""Fixed prompt template for thread enrichment."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from gmail_sync.core.models import CUSTOMER_FACING_CATEGORIES
from gmail_sync.enrichment.schema import BILLING_STATUSES, THREAD_STATUSES, TOPICS

SYSTEM_PROMPT = (
    "You are an assistant that summarizes email threads for a busy team member "
    "and extracts what they need to act on. Always answer with a single JSON "
    "object and nothing else."
)


@dataclass(frozen=True)
class TranscriptLimits:
    max_messages: int = 20
    max_chars_per_message: int = 2000
    max_chars: int = 12000


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
        except ValueError:
            return value
    return "unknown date"


def build_transcript(messages: list[dict[str, Any]], limits: TranscriptLimits) -> str:
    """Chronological transcript, keeping the most recent messages when over budget."""
    recent = messages[-limits.max_messages:] if limits.max_messages > 0 else messages
    omitted = len(messages) - len(recent)

    blocks: list[str] = []
    for idx, msg in enumerate(recent, start=omitted + 1):
        body = msg.get("body_preview") or msg.get("snippet") or "(No content)"
        if len(body) > limits.max_chars_per_message:
            body = body[: limits.max_chars_per_message] + "…"
        sender = msg.get("from_name") or msg.get("from_email") or "unknown sender"
        if msg.get("from_name") and msg.get("from_email"):
            sender = f"{msg['from_name']} <{msg['from_email']}>"
        blocks.append(
            f"Message {idx} ({_format_date(msg.get('date'))}):\n"
            f"From: {sender}\n"
            f"Subject: {msg.get('subject', '')}\n"
            f"{body}\n---"
        )

    # Drop oldest blocks until the transcript fits.
    while len(blocks) > 1 and sum(len(b) + 1 for b in blocks) > limits.max_chars:
        blocks.pop(0)
        omitted += 1

    header = f"({omitted} earlier message(s) omitted)\n" if omitted else ""
    return header + "\n".join(blocks)


def _participant_lines(participants: list[dict[str, Any]]) -> str:
    if not participants:
        return "- (none recorded)"
    lines = []
    for p in participants:
        label = f"{p.get('name')} <{p['email']}>" if p.get("name") else p["email"]
        lines.append(f"- {label} ({p.get('role', 'external')})")
    return "\n".join(lines)


def build_prompt(
    *,
    messages: list[dict[str, Any]],
    category: str,
    participants: list[dict[str, Any]],
    user_email: str = "",
    user_name: str | None = None,
    organization_name: str = "",
    is_calendar_invite: bool = False,
    limits: TranscriptLimits | None = None,
) -> tuple[str, str]:
    """Build the (system, user) prompt pair for one thread."""
    limits = limits or TranscriptLimits()
    transcript = build_transcript(messages, limits)
    me = f"{user_name} <{user_email}>" if user_name else (user_email or "the mailbox owner")
    org = organization_name or "our organization"
    customer_facing = category in CUSTOMER_FACING_CATEGORIES

    sections = [
        f"You are reading the mailbox of {me}, who works at {org}.",
        f"Thread category: {category}.",
        f"Participants (internal = {org}, external = everyone else):",
        _participant_lines(participants),
        "",
        f"This is an email conversation with {len(messages)} message(s):",
        transcript,
        "",
        "Analyze the entire thread and provide:",
        "1. summary: a concise 2-3 sentence summary covering what the conversation "
        "is about, the key points and the current status or outcome.",
        "2. topic: exactly one of " + ", ".join(TOPICS) + ".",
        "3. labels: up to 5 short free-form tags.",
        "4. actionItems: tasks, deadlines, requests and follow-ups from the whole "
        "thread. Only include items that require someone to do something, and say "
        "who needs to do what. Use an empty array if there are none.",
        "5. integrationName: the third-party product the thread is about, or null.",
        f"6. status: one of {', '.join(THREAD_STATUSES)}. Use waiting when the "
        "ball is in someone else's court, resolved when nothing is left to do.",
        "7. isEscalation, escalationReason, escalationType: escalate only when "
        "the thread needs urgent attention; escalationType is customer when a "
        "customer is unhappy or blocked, team when an internal decision is needed.",
        f"8. isBilling and billingStatus (one of {', '.join(BILLING_STATUSES)}) "
        "for threads about invoices, quotes or payments.",
    ]
    if customer_facing:
        sections.append(
            "9. satisfactionScore (integer 1-10, 10 = delighted) and "
            "satisfactionAnalysis (one sentence) for the external customer's mood."
        )
    if is_calendar_invite:
        sections.append("This thread is a calendar invitation: it is never an escalation.")

    sections += [
        "",
        "Respond in JSON format:",
        "{",
        '  "summary": "Brief summary of the entire conversation",',
        '  "topic": "other",',
        '  "labels": ["tag"],',
        '  "actionItems": [',
        '    {"description": "Specific action item with context", '
        '"dueDate": "YYYY-MM-DD" or null, "priority": "high" | "medium" | "low"}',
        "  ],",
        '  "integrationName": null,',
        '  "status": "active",',
        '  "isEscalation": false, "escalationReason": null, "escalationType": null,',
        '  "isBilling": false, "billingStatus": null'
        + (',\n  "satisfactionScore": 7, "satisfactionAnalysis": "..."' if customer_facing else ""),
        "}",
    ]
    return SYSTEM_PROMPT, "\n".join(sections)
