"""Deferred outbound messages and the business-hours gate.

Each phone's pending follow-ups are one JSON list under
``sms:followups:<phone>``; the set ``sms:followups:index`` names every
phone with something pending so the periodic sweep never scans the
keyspace.  List updates go through a bounded compare-and-set loop, so two
workers appending for the same phone cannot overwrite each other.

Delivery is "not before ``due_at``": the sweep may run late, never early.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from datetime import time as dt_time
from typing import Any
from zoneinfo import ZoneInfo

from sms_orchestrator.models import FollowupItem
from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

FOLLOWUP_KEY_PREFIX = "sms:followups:"
INDEX_KEY = "sms:followups:index"
MAX_CAS_ATTEMPTS = 5
SCHEDULE_TTL_GRACE_SECONDS = 7 * 24 * 60 * 60
PENDING_TTL_GRACE_SECONDS = 24 * 60 * 60


class FollowupConflictError(RuntimeError):
    """Compare-and-set retries exhausted while updating a follow-up list."""


class BusinessHours:
    """Local opening hours, ``[open_hour, close_hour)`` every day."""

    def __init__(self, open_hour: int = 8, close_hour: int = 20, timezone: str = "Europe/London") -> None:
        self.open_hour = open_hour
        self.close_hour = close_hour
        self.tz = ZoneInfo(timezone)

    def within(self, now: float) -> bool:
        local = datetime.fromtimestamp(now, tz=self.tz)
        return self.open_hour <= local.hour < self.close_hour

    def seconds_until_open(self, now: float) -> float:
        """Seconds to the next opening: today's if still ahead, else tomorrow's."""
        local = datetime.fromtimestamp(now, tz=self.tz)
        day = local.date()
        if local.hour >= self.open_hour:
            day += timedelta(days=1)
        opening = datetime.combine(day, dt_time(self.open_hour), tzinfo=self.tz)
        return max(1.0, opening.timestamp() - now)


class FollowupScheduler:
    def __init__(
        self,
        store: KeyValueStore,
        business_hours: BusinessHours | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._hours = business_hours or BusinessHours()
        self._clock = clock

    # ── Scheduling ──────────────────────────────────────────────────

    def schedule_followup(
        self,
        phone_number: str,
        text: str,
        delay_sec: float,
        metadata: dict[str, Any] | None = None,
    ) -> FollowupItem:
        now = self._clock()
        item = FollowupItem(
            id=uuid.uuid4().hex,
            phone_number=phone_number,
            text=text,
            delay_sec=delay_sec,
            created_at=now,
            due_at=now + delay_sec,
            metadata=metadata or {},
        )
        key = f"{FOLLOWUP_KEY_PREFIX}{phone_number}"

        for _ in range(MAX_CAS_ATTEMPTS):
            current = self._store.get(key)
            items = [*(current or []), item.model_dump(mode="json")]
            furthest = max(i["due_at"] for i in items)
            ttl = furthest - now + SCHEDULE_TTL_GRACE_SECONDS
            if self._store.compare_and_set(key, current, items, ttl):
                break
        else:
            raise FollowupConflictError(f"Could not schedule follow-up for {phone_number}")

        self._store.set_add(INDEX_KEY, phone_number)
        logger.info(
            "Follow-up %s scheduled for %s in %.0fs", item.id, phone_number, delay_sec,
        )
        return item

    def schedule_at_business_open(
        self,
        phone_number: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> FollowupItem:
        delay = self.seconds_until_business_open()
        return self.schedule_followup(
            phone_number, text, delay, {**(metadata or {}), "deferred": "business_hours"},
        )

    # ── Draining ────────────────────────────────────────────────────

    def pop_due_followups(self, phone_number: str, now: float | None = None) -> list[FollowupItem]:
        """Remove and return every item with ``due_at <= now``."""
        now = self._clock() if now is None else now
        key = f"{FOLLOWUP_KEY_PREFIX}{phone_number}"

        for _ in range(MAX_CAS_ATTEMPTS):
            current = self._store.get(key)
            if not current:
                self._drop_from_index(phone_number)
                return []

            due = [i for i in current if i["due_at"] <= now]
            pending = [i for i in current if i["due_at"] > now]
            if not due:
                return []

            if pending:
                ttl = max(i["due_at"] for i in pending) - now + PENDING_TTL_GRACE_SECONDS
                if self._store.compare_and_set(key, current, pending, ttl):
                    break
            elif self._store.compare_and_set(key, current, None, 1):
                self._drop_from_index(phone_number)
                break
        else:
            raise FollowupConflictError(f"Could not pop follow-ups for {phone_number}")

        items = [FollowupItem.model_validate(i) for i in due]
        return sorted(items, key=lambda i: i.due_at)

    def list_followups(self, phone_number: str) -> list[FollowupItem]:
        raw = self._store.get(f"{FOLLOWUP_KEY_PREFIX}{phone_number}") or []
        return [FollowupItem.model_validate(i) for i in raw]

    def list_phones_with_followups(self) -> list[str]:
        return sorted(self._store.set_members(INDEX_KEY))

    # ── Business hours ──────────────────────────────────────────────

    def within_business_hours(self, now: float | None = None) -> bool:
        return self._hours.within(self._clock() if now is None else now)

    def seconds_until_business_open(self, now: float | None = None) -> float:
        return self._hours.seconds_until_open(self._clock() if now is None else now)

    # ── Internal ────────────────────────────────────────────────────

    def _drop_from_index(self, phone_number: str) -> None:
        self._store.set_remove(INDEX_KEY, phone_number)
        # A concurrent schedule may have landed between the delete and the
        # SREM; put the phone back so the sweep still sees it.
        if self._store.get(f"{FOLLOWUP_KEY_PREFIX}{phone_number}"):
            self._store.set_add(INDEX_KEY, phone_number)
