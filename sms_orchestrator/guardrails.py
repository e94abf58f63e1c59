"""Keyword guardrails and SMS text helpers.

Checks here run before any LLM call: carrier opt-out keywords, complaint
language and abusive language each short-circuit the turn.
"""

from __future__ import annotations

import re

# Carrier-standard opt-out keywords; the whole message must be the keyword.
OPT_OUT_KEYWORDS = frozenset(
    {"STOP", "STOPALL", "STOP ALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "OPT OUT", "OPTOUT"}
)

COMPLAINT_PATTERNS = [
    r"\bcomplain(t|ts|ing)?\b",
    r"\bombudsman\b",
    r"\bfca\b",
    r"\bharass(ed|ing|ment)?\b",
    r"\bformal(ly)? (complaint|grievance)\b",
    r"\breport(ing)? you\b",
    r"\bsolicitor\b",
]

ABUSE_PATTERNS = [
    r"\bf+u+c+k+\w*",
    r"\bsh[i1]t+\w*",
    r"\bc+u+n+t+\w*",
    r"\bbastards?\b",
    r"\bwank\w*",
    r"\bprick\b",
    r"\btwat\b",
    r"\bscum\w*\b",
]

_COMPLAINT_RE = re.compile("|".join(COMPLAINT_PATTERNS), re.IGNORECASE)
_ABUSE_RE = re.compile("|".join(ABUSE_PATTERNS), re.IGNORECASE)

COMPLAINT_ACK = (
    "Thanks for letting us know. We'll flag this for a specialist to review and contact you."
)
ABUSE_ACK = "Understood. I'll pause automated messages and arrange human follow-up."

MAX_SMS_CHARS = 320


def is_opt_out(message: str) -> bool:
    normalised = re.sub(r"[^A-Za-z ]", "", message or "").strip().upper()
    return " ".join(normalised.split()) in OPT_OUT_KEYWORDS


def contains_complaint_intent(message: str) -> bool:
    return bool(_COMPLAINT_RE.search(message or ""))


def contains_abuse_intent(message: str) -> bool:
    return bool(_ABUSE_RE.search(message or ""))


def acknowledgement_for(message: str) -> str | None:
    """Canned reply for complaint/abuse messages, or ``None`` for normal ones."""
    if contains_complaint_intent(message):
        return COMPLAINT_ACK
    if contains_abuse_intent(message):
        return ABUSE_ACK
    return None


def format_sms(text: str, max_chars: int = MAX_SMS_CHARS) -> str:
    """Collapse whitespace and clamp to ``max_chars`` at a word boundary."""
    text = re.sub(r"[ \t]+", " ", (text or "").strip())
    text = re.sub(r"\n{3,}", "\n\n", text)
    if len(text) <= max_chars:
        return text
    cut = text[: max_chars - 1]
    if " " in cut:
        cut = cut[: cut.rfind(" ")]
    return cut.rstrip(" ,;:") + "…"


def to_e164(phone_number: str, default_country_code: str = "44") -> str:
    """Best-effort E.164 normalisation (UK numbers by default)."""
    digits = re.sub(r"[^\d+]", "", phone_number or "")
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    if digits.startswith("00"):
        return "+" + digits[2:]
    if digits.startswith("0"):
        return f"+{default_country_code}{digits[1:]}"
    return f"+{digits}"
