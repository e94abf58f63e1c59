"""Short rolling transcript per phone, fed to the prompt as context."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "sms:history:"
MAX_CAS_ATTEMPTS = 5


class ConversationHistory:
    def __init__(
        self,
        store: KeyValueStore,
        max_entries: int = 10,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock

    def append(self, phone_number: str, role: str, text: str) -> None:
        """Add one exchange, keeping the newest ``max_entries``.

        A lost compare-and-set race after the last attempt drops the entry;
        history is advisory context only.
        """
        key = f"{HISTORY_KEY_PREFIX}{phone_number}"
        entry = {"role": role, "text": text, "at": self._clock()}
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self._store.get(key)
            updated = [*(current or []), entry][-self._max_entries :]
            if self._store.compare_and_set(key, current, updated, self._ttl):
                return
        logger.warning("History append for %s lost to concurrent writers", phone_number)

    def recent(self, phone_number: str) -> list[dict[str, Any]]:
        return self._store.get(f"{HISTORY_KEY_PREFIX}{phone_number}") or []

    def clear(self, phone_number: str) -> None:
        self._store.delete(f"{HISTORY_KEY_PREFIX}{phone_number}")
