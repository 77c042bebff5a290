"""Strict schema for the model's enrichment JSON, with per-field defaulting."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from gmail_sync.core.exceptions import EnrichmentParseError
from gmail_sync.core.models import CUSTOMER_FACING_CATEGORIES

logger = logging.getLogger(__name__)

TOPICS = (
    "integration_request",
    "integration_issue",
    "app_customization",
    "feature_request",
    "bug_report",
    "billing_question",
    "technical_issue",
    "onboarding_help",
    "hiring_team",
    "general_inquiry",
    "other",
)
THREAD_STATUSES = ("active", "waiting", "resolved")
ESCALATION_TYPES = ("customer", "team")
BILLING_STATUSES = ("sent", "accepted", "pending")
PRIORITIES = ("high", "medium", "low")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _first_balanced_object(text: str) -> str | None:
    """The first ``{...}`` span with balanced braces, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json(text: str) -> dict[str, Any]:
    """Pull a JSON object out of a model response.

    Accepts bare JSON, JSON wrapped in a markdown code fence, or JSON
    embedded in prose (first balanced ``{...}`` block).

    Raises:
        EnrichmentParseError: No JSON object could be decoded.
    """
    candidates = [text.strip()]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1))
    block = _first_balanced_object(text)
    if block:
        candidates.append(block)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise EnrichmentParseError(f"No JSON object in model response: {text[:200]!r}")


def _choice(value: Any, allowed: tuple[str, ...]) -> str | None:
    if isinstance(value, str):
        value = value.strip().lower()
        if value in allowed:
            return value
    return None


class ActionItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    description: str = Field(min_length=1)
    due_date: str | None = None
    priority: Literal["high", "medium", "low"] = "medium"

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("due_date", mode="before")
    @classmethod
    def _default_due_date(cls, v: Any) -> str | None:
        return v.strip() if isinstance(v, str) and v.strip() else None

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, v: Any) -> str:
        return _choice(v, PRIORITIES) or "medium"


class ThreadEnrichment(BaseModel):
    """Validated enrichment for one thread.

    Only ``summary`` is required. Every other field falls back to its
    default when missing or malformed instead of failing the whole record.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    summary: str = Field(min_length=1)
    topic: str = "other"
    labels: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    integration_name: str | None = None
    satisfaction_score: int | None = None
    satisfaction_analysis: str | None = None
    is_escalation: bool = False
    escalation_reason: str | None = None
    escalation_type: Literal["customer", "team"] | None = None
    status: Literal["active", "waiting", "resolved"] = "active"
    is_billing: bool = False
    billing_status: Literal["sent", "accepted", "pending"] | None = None

    @field_validator("summary", mode="before")
    @classmethod
    def _strip_summary(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("topic", mode="before")
    @classmethod
    def _default_topic(cls, v: Any) -> str:
        return _choice(v, TOPICS) or "other"

    @field_validator("labels", mode="before")
    @classmethod
    def _default_labels(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [lbl.strip() for lbl in v if isinstance(lbl, str) and lbl.strip()]

    @field_validator("action_items", mode="before")
    @classmethod
    def _default_action_items(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        items = []
        for raw in v:
            if isinstance(raw, str):
                raw = {"description": raw}
            try:
                items.append(ActionItem.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed action item: %r", raw)
        return items

    @field_validator("integration_name", "satisfaction_analysis", "escalation_reason",
                     mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> str | None:
        return v.strip() if isinstance(v, str) and v.strip() else None

    @field_validator("satisfaction_score", mode="before")
    @classmethod
    def _score_in_range(cls, v: Any) -> int | None:
        if isinstance(v, bool):
            return None
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        if isinstance(v, int) and 1 <= v <= 10:
            return v
        return None

    @field_validator("is_escalation", "is_billing", mode="before")
    @classmethod
    def _strict_bool(cls, v: Any) -> bool:
        return v if isinstance(v, bool) else False

    @field_validator("escalation_type", mode="before")
    @classmethod
    def _default_escalation_type(cls, v: Any) -> str | None:
        return _choice(v, ESCALATION_TYPES)

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v: Any) -> str:
        return _choice(v, THREAD_STATUSES) or "active"

    @field_validator("billing_status", mode="before")
    @classmethod
    def _default_billing_status(cls, v: Any) -> str | None:
        return _choice(v, BILLING_STATUSES)

    @classmethod
    def from_model_output(
        cls, data: dict[str, Any], *, category: str, is_calendar_invite: bool
    ) -> ThreadEnrichment:
        """Validate raw model output in the context of the thread it describes.

        Calendar invites are never escalations. Satisfaction fields are kept
        only for customer-facing categories.

        Raises:
            EnrichmentParseError: ``summary`` is missing or empty.
        """
        try:
            result = cls.model_validate(data)
        except ValidationError as e:
            raise EnrichmentParseError(f"Invalid enrichment payload: {e}") from e

        updates: dict[str, Any] = {}
        if is_calendar_invite or not result.is_escalation:
            updates.update(is_escalation=False, escalation_reason=None, escalation_type=None)
        if category not in CUSTOMER_FACING_CATEGORIES:
            updates.update(satisfaction_score=None, satisfaction_analysis=None)
        if not result.is_billing:
            updates.update(billing_status=None)
        return result.model_copy(update=updates) if updates else result

    def to_columns(self) -> dict[str, Any]:
        """Thread-row column values for the enrichment write-back."""
        return {
            "summary": self.summary,
            "action_items": [item.model_dump(by_alias=True) for item in self.action_items],
            "ai_topic": self.topic,
            "ai_labels": self.labels,
            "integration_name": self.integration_name,
            "satisfaction_score": self.satisfaction_score,
            "satisfaction_analysis": self.satisfaction_analysis,
            "is_escalation": self.is_escalation,
            "escalation_reason": self.escalation_reason,
            "escalation_type": self.escalation_type,
            "status": self.status,
            "is_billing": self.is_billing,
            "billing_status": self.billing_status,
        }
