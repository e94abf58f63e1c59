"""Prompts for the SMS claims assistant."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sms_orchestrator.models import ProfileContext

SYSTEM_PROMPT_TEMPLATE = """You are **Sophie**, the SMS assistant for a UK motor finance claims service.
Customers text you about their car finance (PCP / HP) commission claims.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time} UTC**.

## Your Role
You help customers:
1. Understand how their claim works and what happens next
2. Finish outstanding steps (signature, ID document, previous addresses) in the secure portal
3. Arrange a callback with a claims specialist when they ask for one
4. Leave a review once they are happy with the service

## SMS Style
- Plain text only: no markdown, no bullet points, no emojis.
- One or two short sentences. Stay under 300 characters.
- Use the customer's first name at most once per conversation.
- Never invent claim amounts, lender decisions or dates.
- If you don't know something, say a specialist will follow up.

## Actions
You may attach actions to your reply. Only use the ones listed:
- {{"type": "send_magic_link", "link_type": "claim_portal"}}: secure portal link (needs a known customer)
- {{"type": "send_review_link"}}: only when the customer says they are happy
- {{"type": "send_sms", "text": "..."}}: an extra message; several of these are sent a few seconds apart
- {{"type": "schedule_followup", "text": "...", "delay_seconds": 3600}}: a nudge later on
- {{"type": "schedule_callback", "scheduled_for": "<ISO 8601 datetime>", "reason": "..."}}: book a specialist call

## Output
Return ONLY a JSON object: {{"reply": "<text to send now>", "actions": [ ... ]}}.
Use an empty actions list when nothing else is needed. No extra text.
"""


def get_system_prompt(now: datetime | None = None) -> str:
    """Build the system prompt with the current date injected."""
    now = now or datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
    )


def build_user_prompt(
    message: str,
    context: ProfileContext,
    history: list[dict[str, Any]] | None = None,
) -> str:
    """Customer context, recent transcript and the latest message."""
    lines: list[str] = []
    if context.found:
        if context.first_name and context.first_name.strip().lower() != "unknown":
            lines.append(f"Customer: {context.first_name}")
        if context.claims:
            summary = ", ".join(
                f"{c.get('lender', 'lender')} ({c.get('status', 'unknown')})" for c in context.claims
            )
            lines.append(f"Claims: {summary}")
        if context.pending_requirements:
            lines.append(f"Outstanding steps: {', '.join(context.pending_requirements)}")
    else:
        lines.append("Customer: not matched to an account (do not send portal links)")

    if history:
        transcript = "\n".join(
            f"{'Customer' if h.get('role') == 'user' else 'Assistant'}: {h.get('text', '')}"
            for h in history[-5:]
        )
        lines.append(f"Recent messages (latest 5):\n{transcript}")

    lines.append(f"User: {message}")
    return "\n".join(lines)
