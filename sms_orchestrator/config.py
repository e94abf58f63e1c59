"""Centralized configuration for the SMS conversation orchestrator.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/sms-orchestrator/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/sms-orchestrator/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_secret(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /sms-orchestrator/{name} (AWS)."
    )


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


# ── LLM providers ───────────────────────────────────────────────────
# Both keys are optional: a provider without credentials is skipped by
# the fallback chain.
ANTHROPIC_API_KEY: str | None = _optional_secret("ANTHROPIC_API_KEY")
OPENAI_API_KEY: str | None = _optional_secret("OPENAI_API_KEY")
DEFAULT_MODEL_NAME: str = os.getenv("AI_SMS_MODEL", "claude-sonnet-4-5")
LLM_MAX_ATTEMPTS: int = _env_int("AI_SMS_MAX_ATTEMPTS", 3)

# ── SMS transport (Twilio) ──────────────────────────────────────────
TWILIO_ACCOUNT_SID: str = _require_env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str = _require_env("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER: str = _require_env("TWILIO_FROM_NUMBER")
TWILIO_BASE_URL: str = "https://api.twilio.com/2010-04-01"
# Delivery receipts are posted here when set.
TWILIO_STATUS_CALLBACK_URL: str | None = os.getenv("TWILIO_STATUS_CALLBACK_URL") or None

# ── User / profile service ──────────────────────────────────────────
PROFILE_SERVICE_URL: str | None = os.getenv("PROFILE_SERVICE_URL") or None
PROFILE_SERVICE_TOKEN: str | None = _optional_secret("PROFILE_SERVICE_TOKEN")

# ── Backing store ───────────────────────────────────────────────────
# Unset → in-process MemoryStore (single process only).
REDIS_URL: str | None = os.getenv("REDIS_URL") or None

# ── Queue, locks and idempotency ────────────────────────────────────
LOCK_TTL_SECONDS: int = _env_int("SMS_LOCK_TTL_SECONDS", 30)
DEDUP_TTL_SECONDS: int = _env_int("SMS_DEDUP_TTL_SECONDS", 300)
MESSAGE_TTL_SECONDS: int = _env_int("SMS_MESSAGE_TTL_SECONDS", 3600)
MAX_TURN_ATTEMPTS: int = _env_int("SMS_MAX_TURN_ATTEMPTS", 3)
RETRY_BACKOFF_SECONDS: int = _env_int("SMS_RETRY_BACKOFF_SECONDS", 5)
STALE_PROCESSING_SECONDS: int = _env_int("SMS_STALE_PROCESSING_SECONDS", 120)
IDEMPOTENCY_TTL_SECONDS: int = _env_int("SMS_IDEMPOTENCY_TTL_SECONDS", 3600)

# ── Throttling and automation halts ─────────────────────────────────
RATE_LIMIT_MAX: int = _env_int("SMS_RATE_LIMIT_MAX", 4)
RATE_LIMIT_WINDOW_SECONDS: int = _env_int("SMS_RATE_LIMIT_WINDOW_SECONDS", 60)
HALT_TTL_SECONDS: int = _env_int("SMS_HALT_TTL_SECONDS", 24 * 60 * 60)
OPT_OUT_HALT_TTL_SECONDS: int = _env_int("SMS_OPT_OUT_HALT_TTL_SECONDS", 30 * 24 * 60 * 60)

# ── Business hours and follow-ups ───────────────────────────────────
BUSINESS_TIMEZONE: str = os.getenv("SMS_BUSINESS_TIMEZONE", "Europe/London")
BUSINESS_OPEN_HOUR: int = _env_int("SMS_BUSINESS_OPEN_HOUR", 8)
BUSINESS_CLOSE_HOUR: int = _env_int("SMS_BUSINESS_CLOSE_HOUR", 20)
SEQUENCE_SPACING_SECONDS: int = _env_int("SMS_SEQUENCE_SPACING_SECONDS", 5)

# ── Review links ────────────────────────────────────────────────────
REVIEW_URL: str = os.getenv("TRUSTPILOT_REVIEW_URL", "https://uk.trustpilot.com/review/example.co.uk")
REVIEW_COOLDOWN_SECONDS: int = _env_int("AI_SMS_REVIEW_THROTTLE_SECONDS", 30 * 24 * 60 * 60)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
CRON_SECRET: str | None = _optional_secret("CRON_SECRET")
# Kick the queue processor from the webhook request (background task).
PROCESS_INLINE: bool = _env_flag("SMS_PROCESS_INLINE", True)
