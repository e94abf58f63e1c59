"""Per-phone throttles: fixed-window rate limit, automation halts, link cooldowns."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "sms:rate:"
HALT_KEY_PREFIX = "sms:halt:"
COOLDOWN_KEY_PREFIX = "sms:cooldown:"


class RateLimiter:
    """Fixed-window counter per phone number.

    The window opens at the first counted call and closes when the counter
    key expires.  A denied call does not increment the counter.
    """

    def __init__(self, store: KeyValueStore, max_requests: int = 4, window_seconds: int = 60) -> None:
        self._store = store
        self._max = max_requests
        self._window = window_seconds

    def check_and_bump(
        self,
        phone_number: str,
        max_requests: int | None = None,
        window_seconds: int | None = None,
    ) -> bool:
        """Return ``True`` and count the call if under the limit."""
        limit = max_requests or self._max
        window = window_seconds or self._window
        key = f"{RATE_KEY_PREFIX}{phone_number}"

        current = int(self._store.get(key) or 0)
        if current >= limit:
            logger.info("Rate limited %s (%d/%d in %ds)", phone_number, current, limit, window)
            return False
        count = self._store.incr(key, window)
        # Two workers may both pass the read above; INCR still serialises them.
        if count > limit:
            logger.info("Rate limited %s (%d/%d in %ds)", phone_number, count, limit, window)
            return False
        return True


class AutomationHaltStore:
    """Flags that stop automated replies to a phone for a while."""

    def __init__(self, store: KeyValueStore, default_ttl: int = 86400) -> None:
        self._store = store
        self._default_ttl = default_ttl

    def set_halt(self, phone_number: str, ttl_seconds: int | None = None, reason: str = "manual") -> None:
        ttl = ttl_seconds or self._default_ttl
        self._store.set(f"{HALT_KEY_PREFIX}{phone_number}", {"reason": reason}, ttl)
        logger.warning("Automation halted for %s (%s, %ds)", phone_number, reason, ttl)

    def is_halted(self, phone_number: str) -> bool:
        return self._store.get(f"{HALT_KEY_PREFIX}{phone_number}") is not None

    def halt_reason(self, phone_number: str) -> str | None:
        value = self._store.get(f"{HALT_KEY_PREFIX}{phone_number}")
        return value.get("reason") if isinstance(value, dict) else None

    def clear_halt(self, phone_number: str) -> bool:
        cleared = self._store.delete(f"{HALT_KEY_PREFIX}{phone_number}")
        if cleared:
            logger.info("Automation resumed for %s", phone_number)
        return cleared


class LinkCooldowns:
    """Remembers when a kind of link (e.g. ``review``) was last sent."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def last_sent_at(self, phone_number: str, kind: str) -> float | None:
        value = self._store.get(f"{COOLDOWN_KEY_PREFIX}{kind}:{phone_number}")
        return float(value) if value is not None else None

    def record_sent(self, phone_number: str, kind: str, cooldown_seconds: int) -> None:
        self._store.set(
            f"{COOLDOWN_KEY_PREFIX}{kind}:{phone_number}", self._clock(), cooldown_seconds,
        )

    def in_cooldown(self, phone_number: str, kind: str) -> bool:
        return self.last_sent_at(phone_number, kind) is not None
