"""FastAPI route definitions for the SMS orchestrator API."""

from __future__ import annotations

import asyncio
import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from sms_orchestrator import config
from sms_orchestrator.api.schemas import (
    HaltRequest,
    HaltStatusResponse,
    HealthResponse,
    InboundSmsRequest,
    InboundSmsResponse,
    ProcessorRunResponse,
    QueueStatusResponse,
    SweepResponse,
)
from sms_orchestrator.guardrails import to_e164
from sms_orchestrator.runtime import Runtime
from sms_orchestrator.services.intake_queue import DUPLICATE

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_runtime(request: Request) -> Runtime:
    """Retrieve the runtime built during the FastAPI lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return runtime


def _require_cron_secret(request: Request) -> None:
    """Bearer-token check for cron triggers and halt changes; open when no secret is configured."""
    if not config.CRON_SECRET:
        return
    header = request.headers.get("Authorization", "")
    expected = f"Bearer {config.CRON_SECRET}"
    if not secrets.compare_digest(header.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _internal_error(request: Request, what: str) -> HTTPException:
    request_id = getattr(request.state, "request_id", "?")
    logger.exception("[%s] Error %s", request_id, what)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Health ──────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


# ── Webhook intake ──────────────────────────────────────────────────


@router.post("/webhooks/sms", response_model=InboundSmsResponse)
async def inbound_sms(payload: InboundSmsRequest, request: Request, background: BackgroundTasks):
    """Queue an inbound SMS and acknowledge immediately.

    Provider retries of the same message are answered with
    ``{"status": "duplicate"}``.  When inline processing is enabled the
    queue processor is kicked as a background task after the response.
    """
    runtime = _get_runtime(request)
    phone = to_e164(payload.from_phone)

    try:
        message_id = await asyncio.to_thread(
            runtime.queue.enqueue, phone, payload.body, payload.provider_message_id,
        )
    except Exception as e:
        raise _internal_error(request, "enqueuing inbound SMS") from e

    if message_id == DUPLICATE:
        return InboundSmsResponse(status="duplicate")

    if config.PROCESS_INLINE:
        background.add_task(asyncio.to_thread, runtime.processor.process_queue)
    return InboundSmsResponse(status="queued", message_id=message_id)


# ── Cron triggers ───────────────────────────────────────────────────


@router.post(
    "/cron/queue-processor",
    response_model=ProcessorRunResponse,
    dependencies=[Depends(_require_cron_secret)],
)
async def run_queue_processor(request: Request):
    runtime = _get_runtime(request)
    try:
        recovered = await asyncio.to_thread(runtime.processor.recover_stale)
        report = await asyncio.to_thread(runtime.processor.process_queue)
    except Exception as e:
        raise _internal_error(request, "running queue processor") from e
    return ProcessorRunResponse(recovered=recovered, **report.as_dict())


@router.post(
    "/cron/followups",
    response_model=SweepResponse,
    dependencies=[Depends(_require_cron_secret)],
)
async def run_followup_sweep(request: Request):
    runtime = _get_runtime(request)
    try:
        report = await asyncio.to_thread(runtime.dispatcher.sweep)
    except Exception as e:
        raise _internal_error(request, "sweeping follow-ups") from e
    return SweepResponse(**report.as_dict())


# ── Admin ───────────────────────────────────────────────────────────


@router.get("/queue/status", response_model=QueueStatusResponse)
async def queue_status(request: Request):
    runtime = _get_runtime(request)
    stats = await asyncio.to_thread(runtime.queue.stats)
    return QueueStatusResponse(
        processor_running=runtime.processor.is_running, **stats.model_dump(),
    )


@router.get("/halts/{phone}", response_model=HaltStatusResponse)
async def get_halt(phone: str, request: Request):
    runtime = _get_runtime(request)
    phone = to_e164(phone)
    reason = await asyncio.to_thread(runtime.halts.halt_reason, phone)
    return HaltStatusResponse(phone_number=phone, halted=reason is not None, reason=reason)


@router.put(
    "/halts/{phone}",
    response_model=HaltStatusResponse,
    dependencies=[Depends(_require_cron_secret)],
)
async def set_halt(phone: str, payload: HaltRequest, request: Request):
    runtime = _get_runtime(request)
    phone = to_e164(phone)
    await asyncio.to_thread(
        runtime.halts.set_halt, phone, payload.ttl_seconds, reason=payload.reason,
    )
    return HaltStatusResponse(phone_number=phone, halted=True, reason=payload.reason)


@router.delete(
    "/halts/{phone}",
    response_model=HaltStatusResponse,
    dependencies=[Depends(_require_cron_secret)],
)
async def clear_halt(phone: str, request: Request):
    runtime = _get_runtime(request)
    phone = to_e164(phone)
    await asyncio.to_thread(runtime.halts.clear_halt, phone)
    return HaltStatusResponse(phone_number=phone, halted=False)
