"""Tests for the follow-up scheduler and business-hours gate."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from sms_orchestrator.services.followups import (
    BusinessHours,
    FollowupConflictError,
    FollowupScheduler,
)

PHONE = "+447700900000"
LONDON = ZoneInfo("Europe/London")


def _london(*args) -> float:
    return datetime(*args, tzinfo=LONDON).timestamp()


@pytest.fixture
def scheduler(store, clock):
    return FollowupScheduler(store, BusinessHours(8, 20, "Europe/London"), clock=clock)


# ── Scheduling and draining ──────────────────────────────────────────


class TestScheduleAndPop:
    def test_schedule_sets_due_at_and_registers_phone(self, scheduler, clock):
        item = scheduler.schedule_followup(PHONE, "hi", 60, {"source": "test"})
        assert item.due_at == clock.now + 60
        assert scheduler.list_phones_with_followups() == [PHONE]
        assert [i.id for i in scheduler.list_followups(PHONE)] == [item.id]

    def test_pop_returns_exactly_due_items(self, scheduler, clock):
        soon = scheduler.schedule_followup(PHONE, "soon", 10)
        later = scheduler.schedule_followup(PHONE, "later", 100, {"step": 2})

        assert scheduler.pop_due_followups(PHONE, clock.now + 5) == []
        due = scheduler.pop_due_followups(PHONE, clock.now + 10)
        assert [i.id for i in due] == [soon.id]

        [remaining] = scheduler.list_followups(PHONE)
        assert remaining.id == later.id
        assert remaining.text == "later"
        assert remaining.metadata == {"step": 2}
        assert scheduler.list_phones_with_followups() == [PHONE]

    def test_pop_all_removes_phone_from_index(self, scheduler, clock):
        scheduler.schedule_followup(PHONE, "a", 10)
        scheduler.schedule_followup(PHONE, "b", 20)
        due = scheduler.pop_due_followups(PHONE, clock.now + 20)
        assert [i.text for i in due] == ["a", "b"]
        assert scheduler.list_followups(PHONE) == []
        assert scheduler.list_phones_with_followups() == []

    def test_items_are_popped_once(self, scheduler, clock):
        scheduler.schedule_followup(PHONE, "a", 10)
        clock.advance(10)
        assert len(scheduler.pop_due_followups(PHONE)) == 1
        assert scheduler.pop_due_followups(PHONE) == []

    def test_conflict_after_exhausted_retries(self, scheduler, store):
        with patch.object(store, "compare_and_set", return_value=False):
            with pytest.raises(FollowupConflictError):
                scheduler.schedule_followup(PHONE, "a", 10)


# ── Business hours ───────────────────────────────────────────────────


class TestBusinessHours:
    def test_within_hours(self):
        hours = BusinessHours(8, 20, "Europe/London")
        assert hours.within(_london(2026, 1, 15, 8, 0)) is True
        assert hours.within(_london(2026, 1, 15, 19, 59)) is True
        assert hours.within(_london(2026, 1, 15, 20, 0)) is False
        assert hours.within(_london(2026, 1, 15, 7, 59)) is False

    def test_evening_opens_next_morning(self):
        hours = BusinessHours(8, 20, "Europe/London")
        assert hours.seconds_until_open(_london(2026, 1, 15, 21, 0)) == 11 * 3600

    def test_early_morning_opens_same_day(self):
        hours = BusinessHours(8, 20, "Europe/London")
        assert hours.seconds_until_open(_london(2026, 1, 15, 6, 30)) == 90 * 60

    def test_never_less_than_one_second(self):
        hours = BusinessHours(8, 20, "Europe/London")
        just_before = _london(2026, 1, 15, 8, 0) - 0.25
        assert hours.seconds_until_open(just_before) == 1.0

    def test_schedule_at_business_open_at_nine_pm(self, store, clock):
        clock.now = _london(2026, 1, 15, 21, 0)
        scheduler = FollowupScheduler(store, BusinessHours(8, 20, "Europe/London"), clock=clock)

        item = scheduler.schedule_at_business_open(PHONE, "Morning!")

        assert item.due_at == _london(2026, 1, 16, 8, 0)
        assert item.due_at > clock.now
        assert item.metadata["deferred"] == "business_hours"
