"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class InboundSmsRequest(BaseModel):
    """Inbound SMS forwarded by the transport provider."""

    from_phone: str = Field(..., min_length=5, max_length=20, description="Sender phone number")
    body: str = Field(..., max_length=1600, description="Message text")
    provider_message_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Provider's message id (e.g. Twilio MessageSid), used for de-duplication",
    )


class InboundSmsResponse(BaseModel):
    status: str = Field(..., description="'queued' or 'duplicate'")
    message_id: str | None = None


class QueueStatusResponse(BaseModel):
    queue_depth: int
    delayed_retries: int
    processing: int
    healthy: bool
    processor_running: bool


class ProcessorRunResponse(BaseModel):
    processed: int
    completed: int
    failed: int
    retried: int
    dropped: int
    requeued: int
    halted: int
    skipped: bool
    recovered: int = 0
    duration_ms: float


class SweepResponse(BaseModel):
    phones: int
    delivered: int
    deferred: int
    dropped: int
    failed: int


class HaltRequest(BaseModel):
    ttl_seconds: int | None = Field(None, ge=60, description="Defaults to the configured halt TTL")
    reason: str = Field("manual", max_length=64)


class HaltStatusResponse(BaseModel):
    phone_number: str
    halted: bool
    reason: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "sms-orchestrator"
