"""Pydantic models shared across the orchestrator.

Everything that is persisted in the key-value store or parsed from an
external source (LLM output, profile service) is modelled here so that
shape errors surface as ``pydantic.ValidationError`` at the boundary
instead of deep inside a turn.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# ── Queue ────────────────────────────────────────────────────────────


class MessageStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueuedMessage(BaseModel):
    """An inbound SMS waiting for (or undergoing) a turn."""

    id: str
    phone_number: str
    body: str
    provider_message_id: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0
    status: MessageStatus = MessageStatus.PENDING
    error: str | None = None
    user_id: int | None = None
    conversation_id: str | None = None
    processing_started_at: float | None = None


class QueueStats(BaseModel):
    queue_depth: int
    delayed_retries: int
    processing: int
    healthy: bool


# ── Follow-ups ───────────────────────────────────────────────────────


class FollowupItem(BaseModel):
    """A deferred outbound message, delivered no earlier than ``due_at``."""

    id: str
    phone_number: str
    text: str
    delay_sec: float
    created_at: float
    due_at: float
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Turn plan (LLM output) ───────────────────────────────────────────


class SendSmsAction(BaseModel):
    type: Literal["send_sms"] = "send_sms"
    text: str = Field(..., min_length=1)
    phone_number: str | None = None


class SendMagicLinkAction(BaseModel):
    type: Literal["send_magic_link"] = "send_magic_link"
    user_id: int | None = None
    link_type: str = "claim_portal"
    phone_number: str | None = None


class SendReviewLinkAction(BaseModel):
    type: Literal["send_review_link"] = "send_review_link"
    phone_number: str | None = None


class ScheduleFollowupAction(BaseModel):
    type: Literal["schedule_followup"] = "schedule_followup"
    text: str = Field(..., min_length=1)
    delay_seconds: int = Field(..., ge=1)


class ScheduleCallbackAction(BaseModel):
    type: Literal["schedule_callback"] = "schedule_callback"
    scheduled_for: datetime
    reason: str | None = None


Action = Annotated[
    SendSmsAction
    | SendMagicLinkAction
    | SendReviewLinkAction
    | ScheduleFollowupAction
    | ScheduleCallbackAction,
    Field(discriminator="type"),
]


class TurnPlan(BaseModel):
    """The reply and ordered side effects produced for one turn."""

    reply: str | None = None
    actions: list[Action] = Field(default_factory=list)

    def serialized_actions(self) -> str:
        """Stable JSON rendering used when deriving idempotency keys."""
        return json.dumps(
            [a.model_dump(mode="json") for a in self.actions], sort_keys=True,
        )


def parse_turn_plan(content: str) -> TurnPlan:
    """Parse and validate raw LLM JSON into a :class:`TurnPlan`.

    Raises ``pydantic.ValidationError`` (a ``ValueError``) for anything
    that is not a well-formed plan, including unknown action types.
    """
    return TurnPlan.model_validate_json(content)


# ── External collaborators ──────────────────────────────────────────


class ProfileContext(BaseModel):
    """Read-only user context returned by the profile service."""

    found: bool = False
    user_id: int | None = None
    first_name: str | None = None
    claims: list[dict[str, Any]] = Field(default_factory=list)
    pending_requirements: list[str] = Field(default_factory=list)


class SmsSendRequest(BaseModel):
    phone_number: str
    message: str
    message_type: str = "auto_response"
    user_id: int | None = None
