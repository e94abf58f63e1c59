"""Idempotency ledger: at-most-once execution of side effects.

Every side effect (reply send, action, follow-up delivery) gets a
deterministic key.  Callers check → execute → mark.  A crash between
execute and mark can still duplicate the side effect on retry; true
exactly-once would need the ledger write and the send in one transaction,
which the backing store does not offer.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from typing import TypeVar

from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "sms:idemp:"
DEFAULT_TTL_SECONDS = 3600

T = TypeVar("T")


def turn_key(phone_number: str, reply_text: str, serialized_actions: str) -> str:
    """Hash of everything a turn would do, so identical plans share a key."""
    digest = hashlib.sha256(
        "\x1f".join((phone_number, reply_text, serialized_actions)).encode("utf-8"),
    ).hexdigest()
    return f"turn:{digest[:32]}"


def reply_key(turn: str) -> str:
    return f"{turn}:reply"


def action_key(turn: str, index: int) -> str:
    return f"{turn}:action:{index}"


def followup_key(followup_id: str) -> str:
    return f"followup:{followup_id}"


class IdempotencyLedger:
    """Tracks which logical action keys have already been executed."""

    def __init__(self, store: KeyValueStore, default_ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self._store = store
        self._default_ttl = default_ttl

    def is_used(self, key: str) -> bool:
        return bool(self._store.get(f"{KEY_PREFIX}{key}"))

    def mark_used(self, key: str, ttl_seconds: int | None = None) -> None:
        self._store.set(f"{KEY_PREFIX}{key}", 1, ttl_seconds or self._default_ttl)

    def run_once(self, key: str, fn: Callable[[], T]) -> tuple[bool, T | None]:
        """Execute *fn* unless *key* is already used, then mark it.

        Returns ``(executed, result)``.  If *fn* raises, the key is left
        unmarked so a retry can try again.
        """
        if self.is_used(key):
            logger.info("Idempotent skip: %s", key)
            return False, None
        result = fn()
        self.mark_used(key)
        return True, result
