"""Per-conversation lease locks.

A lease is a set-if-absent key with a fixed TTL.  There is no heartbeat:
a turn that runs longer than the TTL loses exclusivity and a second
worker may start a turn for the same phone.  The idempotency ledger is the
last line of defence against duplicate side effects in that window.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "sms:lock:"
DEFAULT_LOCK_TTL_SECONDS = 30


class ConversationLockManager:
    """Leases a mutual-exclusion token per phone number."""

    def __init__(
        self,
        store: KeyValueStore,
        default_ttl: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def acquire(self, phone_number: str, ttl_seconds: float | None = None) -> bool:
        """Return ``True`` only if this call created the lease."""
        lease = {"token": uuid.uuid4().hex, "acquired_at": self._clock()}
        acquired = self._store.set_if_absent(
            f"{LOCK_KEY_PREFIX}{phone_number}", lease, ttl_seconds or self._default_ttl,
        )
        if not acquired:
            logger.debug("Lock busy for %s", phone_number)
        return acquired

    def release(self, phone_number: str) -> None:
        """Unconditionally drop the lease, even one that may now be foreign."""
        self._store.delete(f"{LOCK_KEY_PREFIX}{phone_number}")

    def holder(self, phone_number: str) -> dict[str, Any] | None:
        """Current lease for diagnostics, or ``None`` if free."""
        return self._store.get(f"{LOCK_KEY_PREFIX}{phone_number}")
