"""LangGraph turn orchestrator for one inbound SMS.

Architecture:
  A linear StateGraph with two early exits:

    1. **halt_check**        — automation halt, STOP opt-out, complaint/abuse
    2. **rate_check**        — per-phone burst limit
    3. **context_build**     — deliver due follow-ups, profile + transcript
    4. **generate**          — multi-provider LLM call producing a TurnPlan
    5. **reply_dispatch**    — send (or defer to business hours) the reply
    6. **actions_dispatch**  — execute each action at most once

  Routing:
    halt_check → (halted?)       → END
               → rate_check → (limited?) → END
               → context_build → generate → reply_dispatch → actions_dispatch → END

  Every side effect is guarded by the idempotency ledger, keyed on a hash
  of the generated plan, so a retried turn that regenerates the same plan
  never re-sends what already went out.  Exceptions from any node
  propagate to the queue processor, which schedules a retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from sms_orchestrator.guardrails import (
    acknowledgement_for,
    contains_complaint_intent,
    format_sms,
    is_opt_out,
)
from sms_orchestrator.models import (
    Action,
    ProfileContext,
    QueuedMessage,
    ScheduleCallbackAction,
    ScheduleFollowupAction,
    SendMagicLinkAction,
    SendReviewLinkAction,
    SendSmsAction,
    SmsSendRequest,
    TurnPlan,
    parse_turn_plan,
)
from sms_orchestrator.prompts import build_user_prompt, get_system_prompt
from sms_orchestrator.services.followups import FollowupScheduler
from sms_orchestrator.services.history import ConversationHistory
from sms_orchestrator.services.idempotency import (
    IdempotencyLedger,
    action_key,
    reply_key,
    turn_key,
)
from sms_orchestrator.services.limits import AutomationHaltStore, LinkCooldowns, RateLimiter
from sms_orchestrator.services.llm_client import ChatRequest, ResponseGenerator
from sms_orchestrator.services.metrics import metrics
from sms_orchestrator.services.profile_client import ProfileService, ProfileServiceError
from sms_orchestrator.services.sms_transport import SmsTransport
from sms_orchestrator.sweeper import FollowupDispatcher

logger = logging.getLogger(__name__)

MAGIC_LINK_DEFERRED_TEXT = (
    "I can send your secure portal link as soon as we open. Just reply YES and it's on its way."
)


class ActionExecutionError(RuntimeError):
    """One or more plan actions failed; the rest were still attempted."""

    def __init__(self, failures: list[tuple[int, str, Exception]]):
        self.failures = failures
        summary = "; ".join(f"#{i} {kind}: {exc}" for i, kind, exc in failures)
        super().__init__(f"{len(failures)} action(s) failed: {summary}")


# ── Dependencies ─────────────────────────────────────────────────────


@dataclass
class TurnDependencies:
    transport: SmsTransport
    profiles: ProfileService
    generator: ResponseGenerator
    ledger: IdempotencyLedger
    scheduler: FollowupScheduler
    dispatcher: FollowupDispatcher
    rate_limiter: RateLimiter
    halts: AutomationHaltStore
    cooldowns: LinkCooldowns
    history: ConversationHistory
    model_name: str | None = None
    llm_max_attempts: int = 3
    halt_ttl_seconds: int = 24 * 60 * 60
    opt_out_halt_ttl_seconds: int = 30 * 24 * 60 * 60
    sequence_spacing_seconds: int = 5
    review_url: str = "https://uk.trustpilot.com/review/example.co.uk"
    review_cooldown_seconds: int = 30 * 24 * 60 * 60


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """Everything one turn reads and writes.

    ``outcome`` is set by any node that ends the turn early and by the
    last node on the normal path; it is what the processor logs.
    """

    phone_number: str
    body: str
    user_id: int | None
    attempts: int
    outcome: str
    context: ProfileContext
    history: list[dict[str, Any]]
    plan: TurnPlan
    degraded: bool
    model_used: str
    turn_key: str
    reply_status: str
    actions_executed: list[str]


# ── Helpers ─────────────────────────────────────────────────────────


def _send_now_or_at_open(
    deps: TurnDependencies,
    phone_number: str,
    text: str,
    user_id: int | None,
    kind: str,
    message_type: str = "auto_response",
) -> str:
    """Send immediately inside business hours, else queue for opening time."""
    if deps.scheduler.within_business_hours():
        deps.transport.send(
            SmsSendRequest(
                phone_number=phone_number,
                message=text,
                message_type=message_type,
                user_id=user_id,
            )
        )
        return "sent"
    deps.scheduler.schedule_at_business_open(phone_number, text, {"kind": kind})
    logger.info("Outside business hours, %s for %s deferred to opening", kind, phone_number)
    return "deferred"


# ── Node: halt_check ────────────────────────────────────────────────


def _make_halt_check_node(deps: TurnDependencies):
    def halt_check_node(state: TurnState) -> dict:
        phone = state["phone_number"]
        body = state.get("body", "")

        if deps.halts.is_halted(phone):
            logger.info("Automation halted for %s; skipping turn", phone)
            return {"outcome": "halted"}

        if is_opt_out(body):
            deps.halts.set_halt(phone, deps.opt_out_halt_ttl_seconds, reason="opt_out")
            return {"outcome": "opted_out"}

        ack = acknowledgement_for(body)
        if ack is None:
            return {}

        reason = "complaint" if contains_complaint_intent(body) else "abuse"
        deps.ledger.run_once(
            reply_key(turn_key(phone, ack, "[]")),
            lambda: deps.transport.send(
                SmsSendRequest(
                    phone_number=phone,
                    message=ack,
                    user_id=state.get("user_id"),
                )
            ),
        )
        deps.halts.set_halt(phone, deps.halt_ttl_seconds, reason=reason)
        logger.warning("%s from %s acknowledged; automation halted", reason.capitalize(), phone)
        return {"outcome": reason}

    return halt_check_node


# ── Node: rate_check ────────────────────────────────────────────────


def _make_rate_check_node(deps: TurnDependencies):
    def rate_check_node(state: TurnState) -> dict:
        if deps.rate_limiter.check_and_bump(state["phone_number"]):
            return {}
        return {"outcome": "rate_limited"}

    return rate_check_node


# ── Node: context_build ─────────────────────────────────────────────


def _make_context_node(deps: TurnDependencies):
    def context_node(state: TurnState) -> dict:
        phone = state["phone_number"]

        report = deps.dispatcher.deliver_for_phone(phone)
        if report.delivered or report.deferred:
            logger.info(
                "Delivered %d / deferred %d due follow-ups before turn for %s",
                report.delivered, report.deferred, phone,
            )

        try:
            context = deps.profiles.get_context(phone)
        except ProfileServiceError as exc:
            logger.warning("Profile lookup failed for %s, continuing without context: %s", phone, exc)
            context = ProfileContext(found=False)

        return {
            "context": context,
            "history": deps.history.recent(phone),
            "user_id": state.get("user_id") or context.user_id,
        }

    return context_node


# ── Node: generate ──────────────────────────────────────────────────


def _make_generate_node(deps: TurnDependencies):
    def generate_node(state: TurnState) -> dict:
        phone = state["phone_number"]
        request = ChatRequest(
            system_prompt=get_system_prompt(),
            user_prompt=build_user_prompt(
                state.get("body", ""),
                state.get("context") or ProfileContext(),
                state.get("history"),
            ),
            requested_model=deps.model_name,
            max_retries=deps.llm_max_attempts,
            expect_json=True,
            validator=parse_turn_plan,
        )
        result = deps.generator.generate(request)

        if result.success:
            plan = parse_turn_plan(result.content)
        else:
            plan = TurnPlan(reply=result.content, actions=[])
            metrics.record_count("Turn/Degraded")

        logger.debug(
            "Plan for %s via %s: reply=%r actions=%s",
            phone, result.model_used, plan.reply, [a.type for a in plan.actions],
        )
        return {
            "plan": plan,
            "degraded": not result.success,
            "model_used": result.model_used,
            "turn_key": turn_key(phone, plan.reply or "", plan.serialized_actions()),
        }

    return generate_node


# ── Node: reply_dispatch ────────────────────────────────────────────


def _make_reply_node(deps: TurnDependencies):
    def reply_node(state: TurnState) -> dict:
        phone = state["phone_number"]
        plan = state["plan"]
        if not plan.reply:
            return {"reply_status": "none"}

        key = reply_key(state["turn_key"])
        if deps.ledger.is_used(key):
            if state.get("attempts", 0) == 0:
                logger.warning(
                    "Reply for %s was already sent although this is a first attempt; "
                    "a previous turn probably outlived its lock",
                    phone,
                )
            else:
                logger.info("Reply for %s already sent on an earlier attempt", phone)
            return {"reply_status": "skipped"}

        text = format_sms(plan.reply)
        status = _send_now_or_at_open(deps, phone, text, state.get("user_id"), "primary_reply")
        deps.ledger.mark_used(key)

        deps.history.append(phone, "user", state.get("body", ""))
        deps.history.append(phone, "assistant", text)
        return {"reply_status": status}

    return reply_node


# ── Node: actions_dispatch ──────────────────────────────────────────


def _make_actions_node(deps: TurnDependencies):
    def run_action(state: TurnState, action: Action, sequence_step: int | None) -> None:
        phone = state["phone_number"]
        user_id = state.get("user_id")

        if getattr(action, "phone_number", None) and action.phone_number != phone:
            logger.warning(
                "Ignoring %s target %s; actions only go to %s", action.type, action.phone_number, phone,
            )

        if isinstance(action, SendSmsAction):
            text = format_sms(action.text)
            if sequence_step is None:
                _send_now_or_at_open(deps, phone, text, user_id, "action_sms")
            else:
                deps.scheduler.schedule_followup(
                    phone,
                    text,
                    sequence_step * deps.sequence_spacing_seconds,
                    {"kind": "sequence", "step": sequence_step},
                )

        elif isinstance(action, SendMagicLinkAction):
            target_user = action.user_id or user_id
            if target_user is None:
                logger.warning("No known user for %s; magic link not sent", phone)
                return
            if not deps.scheduler.within_business_hours():
                deps.scheduler.schedule_at_business_open(
                    phone, MAGIC_LINK_DEFERRED_TEXT, {"kind": "magic_link_prompt"},
                )
                return
            url = deps.profiles.create_portal_link(target_user, action.link_type)
            deps.transport.send(
                SmsSendRequest(
                    phone_number=phone,
                    message=format_sms(f"Here's your secure portal link: {url}"),
                    message_type="magic_link",
                    user_id=target_user,
                )
            )

        elif isinstance(action, SendReviewLinkAction):
            if deps.cooldowns.in_cooldown(phone, "review"):
                logger.info("Review link for %s throttled", phone)
                return
            text = format_sms(f"Here's the review link: {deps.review_url}")
            _send_now_or_at_open(deps, phone, text, user_id, "review_link")
            deps.cooldowns.record_sent(phone, "review", deps.review_cooldown_seconds)

        elif isinstance(action, ScheduleFollowupAction):
            deps.scheduler.schedule_followup(
                phone, format_sms(action.text), action.delay_seconds, {"kind": "agent_followup"},
            )

        elif isinstance(action, ScheduleCallbackAction):
            if user_id is None:
                logger.warning("No known user for %s; callback request not logged", phone)
                return
            deps.profiles.request_callback(user_id, phone, action.scheduled_for, action.reason)

    def actions_node(state: TurnState) -> dict:
        plan = state["plan"]
        key_base = state["turn_key"]

        sms_indexes = [i for i, a in enumerate(plan.actions) if isinstance(a, SendSmsAction)]
        steps = (
            {index: step for step, index in enumerate(sms_indexes, start=1)}
            if len(sms_indexes) > 1 else {}
        )

        executed: list[str] = []
        failures: list[tuple[int, str, Exception]] = []
        for index, action in enumerate(plan.actions):
            key = action_key(key_base, index)
            if deps.ledger.is_used(key):
                logger.info("Action #%d (%s) already executed", index, action.type)
                continue
            try:
                run_action(state, action, steps.get(index))
            except Exception as exc:
                logger.error("Action #%d (%s) failed for %s: %s", index, action.type, state["phone_number"], exc)
                metrics.record_count("Turn/ActionFailed", action=action.type)
                failures.append((index, action.type, exc))
                continue
            deps.ledger.mark_used(key)
            executed.append(action.type)

        if failures:
            raise ActionExecutionError(failures)

        return {
            "actions_executed": executed,
            "outcome": "degraded" if state.get("degraded") else "completed",
        }

    return actions_node


# ── Conditional edges ────────────────────────────────────────────────


def continue_unless_finished(next_node: str):
    def _route(state: TurnState) -> str:
        return END if state.get("outcome") else next_node

    return _route


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_agent(deps: TurnDependencies):
    """Build and compile the turn graph.

    Returns a compiled graph that can be invoked with:
        graph.invoke({"phone_number": "+447700900000", "body": "...", "attempts": 0})
    """
    graph = StateGraph(TurnState)

    graph.add_node("halt_check", _make_halt_check_node(deps))
    graph.add_node("rate_check", _make_rate_check_node(deps))
    graph.add_node("context_build", _make_context_node(deps))
    graph.add_node("generate", _make_generate_node(deps))
    graph.add_node("reply_dispatch", _make_reply_node(deps))
    graph.add_node("actions_dispatch", _make_actions_node(deps))

    graph.set_entry_point("halt_check")
    graph.add_conditional_edges(
        "halt_check",
        continue_unless_finished("rate_check"),
        {"rate_check": "rate_check", END: END},
    )
    graph.add_conditional_edges(
        "rate_check",
        continue_unless_finished("context_build"),
        {"context_build": "context_build", END: END},
    )
    graph.add_edge("context_build", "generate")
    graph.add_edge("generate", "reply_dispatch")
    graph.add_edge("reply_dispatch", "actions_dispatch")
    graph.add_edge("actions_dispatch", END)

    compiled = graph.compile()
    logger.debug("Turn agent compiled (model=%s)", deps.model_name or "default")
    return compiled


def run_turn(agent, message: QueuedMessage) -> TurnState:
    """Run one turn for *message*; exceptions propagate to the caller."""
    final = agent.invoke(
        {
            "phone_number": message.phone_number,
            "body": message.body,
            "user_id": message.user_id,
            "attempts": message.attempts,
        }
    )
    outcome = final.get("outcome", "completed")
    metrics.record_count("Turn/Outcome", outcome=outcome)
    logger.info("Turn for %s finished: %s", message.phone_number, outcome)
    return final
