"""Wires every component once from ``config`` and hands out the bundle.

The server lifespan, the CLI and the tests all call :func:`build_runtime`;
anything passed in explicitly (store, transport, clock...) replaces the
configured default, which is how tests run the whole pipeline against a
``MemoryStore`` and a fake transport.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from sms_orchestrator import config
from sms_orchestrator.agent import TurnDependencies, TurnState, create_turn_agent, run_turn
from sms_orchestrator.models import QueuedMessage
from sms_orchestrator.services.followups import BusinessHours, FollowupScheduler
from sms_orchestrator.services.history import ConversationHistory
from sms_orchestrator.services.idempotency import IdempotencyLedger
from sms_orchestrator.services.intake_queue import IntakeQueue
from sms_orchestrator.services.limits import AutomationHaltStore, LinkCooldowns, RateLimiter
from sms_orchestrator.services.llm_client import ResponseGenerator
from sms_orchestrator.services.locks import ConversationLockManager
from sms_orchestrator.services.profile_client import ProfileService, build_profile_service
from sms_orchestrator.services.sms_transport import SmsTransport, TwilioSmsTransport
from sms_orchestrator.services.store import KeyValueStore, build_store
from sms_orchestrator.sweeper import FollowupDispatcher
from sms_orchestrator.worker import ITERATION_DELAY_SECONDS, QueueProcessor

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: KeyValueStore
    queue: IntakeQueue
    locks: ConversationLockManager
    ledger: IdempotencyLedger
    halts: AutomationHaltStore
    scheduler: FollowupScheduler
    transport: SmsTransport
    profiles: ProfileService
    generator: ResponseGenerator
    dispatcher: FollowupDispatcher
    processor: QueueProcessor
    agent: object

    def run_turn(self, message: QueuedMessage) -> TurnState:
        return run_turn(self.agent, message)

    def close(self) -> None:
        self.processor.stop()
        for client in (self.transport, self.profiles):
            close = getattr(client, "close", None)
            if close is not None:
                close()


def build_runtime(
    *,
    store: KeyValueStore | None = None,
    transport: SmsTransport | None = None,
    profiles: ProfileService | None = None,
    generator: ResponseGenerator | None = None,
    clock: Callable[[], float] = time.time,
    iteration_delay: float = ITERATION_DELAY_SECONDS,
) -> Runtime:
    store = store or build_store(config.REDIS_URL)
    transport = transport or TwilioSmsTransport(
        config.TWILIO_ACCOUNT_SID,
        config.TWILIO_AUTH_TOKEN,
        config.TWILIO_FROM_NUMBER,
        base_url=config.TWILIO_BASE_URL,
        status_callback_url=config.TWILIO_STATUS_CALLBACK_URL,
    )
    profiles = profiles or build_profile_service(
        config.PROFILE_SERVICE_URL, config.PROFILE_SERVICE_TOKEN,
    )
    generator = generator or ResponseGenerator(
        anthropic_api_key=config.ANTHROPIC_API_KEY,
        openai_api_key=config.OPENAI_API_KEY,
        default_model=config.DEFAULT_MODEL_NAME,
    )

    queue = IntakeQueue(
        store,
        dedup_ttl=config.DEDUP_TTL_SECONDS,
        message_ttl=config.MESSAGE_TTL_SECONDS,
        max_attempts=config.MAX_TURN_ATTEMPTS,
        retry_backoff_seconds=config.RETRY_BACKOFF_SECONDS,
        clock=clock,
    )
    locks = ConversationLockManager(store, default_ttl=config.LOCK_TTL_SECONDS, clock=clock)
    ledger = IdempotencyLedger(store, default_ttl=config.IDEMPOTENCY_TTL_SECONDS)
    halts = AutomationHaltStore(store, default_ttl=config.HALT_TTL_SECONDS)
    scheduler = FollowupScheduler(
        store,
        BusinessHours(config.BUSINESS_OPEN_HOUR, config.BUSINESS_CLOSE_HOUR, config.BUSINESS_TIMEZONE),
        clock=clock,
    )
    dispatcher = FollowupDispatcher(scheduler, transport, ledger, halts)

    deps = TurnDependencies(
        transport=transport,
        profiles=profiles,
        generator=generator,
        ledger=ledger,
        scheduler=scheduler,
        dispatcher=dispatcher,
        rate_limiter=RateLimiter(
            store, config.RATE_LIMIT_MAX, config.RATE_LIMIT_WINDOW_SECONDS,
        ),
        halts=halts,
        cooldowns=LinkCooldowns(store, clock=clock),
        history=ConversationHistory(store, clock=clock),
        model_name=config.DEFAULT_MODEL_NAME,
        llm_max_attempts=config.LLM_MAX_ATTEMPTS,
        halt_ttl_seconds=config.HALT_TTL_SECONDS,
        opt_out_halt_ttl_seconds=config.OPT_OUT_HALT_TTL_SECONDS,
        sequence_spacing_seconds=config.SEQUENCE_SPACING_SECONDS,
        review_url=config.REVIEW_URL,
        review_cooldown_seconds=config.REVIEW_COOLDOWN_SECONDS,
    )
    agent = create_turn_agent(deps)

    processor = QueueProcessor(
        queue,
        locks,
        halts,
        lambda message: run_turn(agent, message),
        iteration_delay=iteration_delay,
        stale_after_seconds=config.STALE_PROCESSING_SECONDS,
        clock=clock,
    )
    logger.info(
        "Runtime ready (store=%s, model=%s)", type(store).__name__, config.DEFAULT_MODEL_NAME,
    )
    return Runtime(
        store=store,
        queue=queue,
        locks=locks,
        ledger=ledger,
        halts=halts,
        scheduler=scheduler,
        transport=transport,
        profiles=profiles,
        generator=generator,
        dispatcher=dispatcher,
        processor=processor,
        agent=agent,
    )
