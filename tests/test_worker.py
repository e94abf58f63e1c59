"""Tests for the queue processor loop."""

from __future__ import annotations

import json
import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from sms_orchestrator.agent import TurnDependencies, create_turn_agent, run_turn
from sms_orchestrator.models import ProfileContext
from sms_orchestrator.services.followups import BusinessHours, FollowupScheduler
from sms_orchestrator.services.history import ConversationHistory
from sms_orchestrator.services.idempotency import IdempotencyLedger
from sms_orchestrator.services.intake_queue import IntakeQueue
from sms_orchestrator.services.limits import AutomationHaltStore, LinkCooldowns, RateLimiter
from sms_orchestrator.services.llm_client import ChatResult
from sms_orchestrator.services.locks import ConversationLockManager
from sms_orchestrator.services.profile_client import ProfileService
from sms_orchestrator.services.sms_transport import ConsoleSmsTransport
from sms_orchestrator.sweeper import FollowupDispatcher
from sms_orchestrator.worker import QueueProcessor

PHONE_A = "+447700900001"
PHONE_B = "+447700900002"


@pytest.fixture
def queue(store, clock):
    return IntakeQueue(store, max_attempts=3, retry_backoff_seconds=5, clock=clock)


@pytest.fixture
def locks(store, clock):
    return ConversationLockManager(store, default_ttl=30, clock=clock)


@pytest.fixture
def halts(store):
    return AutomationHaltStore(store)


@pytest.fixture
def runner():
    return MagicMock(return_value={"outcome": "completed"})


@pytest.fixture
def processor(queue, locks, halts, runner, clock):
    return QueueProcessor(queue, locks, halts, runner, iteration_delay=0, clock=clock)


class TestDraining:
    def test_processes_in_arrival_order(self, processor, queue, runner):
        queue.enqueue(PHONE_A, "first", "SM1")
        queue.enqueue(PHONE_B, "second", "SM2")

        report = processor.process_queue()

        assert report.processed == 2
        assert report.completed == 2
        assert [c.args[0].body for c in runner.call_args_list] == ["first", "second"]
        assert queue.depth() == 0
        assert queue.stats().processing == 0

    def test_empty_queue_is_a_noop(self, processor, runner):
        report = processor.process_queue()
        assert report.processed == 0
        runner.assert_not_called()

    def test_respects_max_messages(self, processor, queue):
        for i in range(3):
            queue.enqueue(PHONE_A, f"m{i}", f"SM{i}")
        report = processor.process_queue(max_messages=2)
        assert report.processed == 2
        assert queue.depth() == 1

    def test_halted_phone_is_completed_without_a_turn(self, processor, queue, halts, runner):
        message_id = queue.enqueue(PHONE_A, "hello", "SM1")
        halts.set_halt(PHONE_A, 3600)

        report = processor.process_queue()

        assert report.halted == 1
        runner.assert_not_called()
        assert queue.get(message_id) is None

    def test_lock_released_after_turn(self, processor, queue, locks):
        queue.enqueue(PHONE_A, "hello", "SM1")
        processor.process_queue()
        assert locks.holder(PHONE_A) is None


class TestLockContention:
    def test_busy_phone_is_requeued_untouched(self, processor, queue, locks, runner):
        locks.acquire(PHONE_A)
        original_id = queue.enqueue(PHONE_A, "hello", "SM1")

        report = processor.process_queue()

        assert report.requeued == 1
        assert report.failed == 0
        runner.assert_not_called()
        assert queue.depth() == 1
        assert queue.get(original_id) is None

        requeued = queue.dequeue()
        assert requeued.id != original_id
        assert requeued.body == "hello"
        assert requeued.attempts == 0

    def test_other_phones_still_served(self, processor, queue, locks, runner):
        locks.acquire(PHONE_A)
        queue.enqueue(PHONE_A, "busy", "SM1")
        queue.enqueue(PHONE_B, "free", "SM2")

        report = processor.process_queue()

        assert [c.args[0].body for c in runner.call_args_list] == ["free"]
        assert report.completed == 1
        assert queue.depth() == 1


class TestFailures:
    def test_failed_turn_is_retried_with_backoff(self, processor, queue, runner, clock):
        runner.side_effect = RuntimeError("llm down")
        queue.enqueue(PHONE_A, "hello", "SM1")

        report = processor.process_queue()
        assert report.failed == 1
        assert report.retried == 1
        assert queue.stats().delayed_retries == 1

        # Not due yet
        assert processor.process_queue().processed == 0

        clock.advance(5)
        runner.side_effect = None
        report = processor.process_queue()
        assert report.completed == 1
        assert runner.call_args.args[0].attempts == 1

    def test_dropped_after_max_attempts(self, processor, queue, runner, clock, locks):
        runner.side_effect = RuntimeError("always broken")
        message_id = queue.enqueue(PHONE_A, "hello", "SM1")

        processor.process_queue()
        clock.advance(5)
        processor.process_queue()
        clock.advance(10)
        report = processor.process_queue()

        assert report.dropped == 1
        assert runner.call_count == 3
        assert queue.stats().delayed_retries == 0
        assert queue.get(message_id).status == "failed"
        assert locks.holder(PHONE_A) is None

    def test_slow_turn_logs_lock_overrun(self, processor, queue, runner, clock, caplog):
        runner.side_effect = lambda message: clock.advance(45)
        queue.enqueue(PHONE_A, "hello", "SM1")

        with caplog.at_level(logging.WARNING, logger="sms_orchestrator.worker"):
            processor.process_queue()

        assert "longer than its 30s lock" in caplog.text


class TestLoopControl:
    def test_reentrant_call_is_skipped(self, processor, queue, runner):
        nested = []
        runner.side_effect = lambda message: nested.append(processor.process_queue())
        queue.enqueue(PHONE_A, "hello", "SM1")

        report = processor.process_queue()

        assert report.completed == 1
        assert nested[0].skipped is True
        assert processor.is_running is False

    def test_stop_ends_after_current_message(self, processor, queue, runner):
        runner.side_effect = lambda message: processor.stop()
        queue.enqueue(PHONE_A, "one", "SM1")
        queue.enqueue(PHONE_B, "two", "SM2")

        report = processor.process_queue()

        assert report.processed == 1
        assert queue.depth() == 1

    def test_recover_stale_requeues_abandoned_message(self, processor, queue, clock):
        queue.enqueue(PHONE_A, "hello", "SM1")
        queue.dequeue()
        clock.advance(121)

        assert processor.recover_stale() == 1
        assert queue.depth() == 1


# ── Shared-store concurrency ─────────────────────────────────────────


def _turn_dependencies(store, clock, transport) -> TurnDependencies:
    """Real turn wiring over *store* with a generator that always plans the same reply."""
    profiles = MagicMock(spec=ProfileService)
    profiles.get_context.return_value = ProfileContext(found=False)
    generator = MagicMock()
    generator.generate.return_value = ChatResult(
        content=json.dumps({"reply": "Thanks, looking into it.", "actions": []}),
        model_used="claude-sonnet-4-5",
        provider="anthropic",
        fallbacks_used=0,
        success=True,
        total_time_ms=10.0,
    )
    ledger = IdempotencyLedger(store)
    halts = AutomationHaltStore(store)
    scheduler = FollowupScheduler(store, BusinessHours(8, 20, "Europe/London"), clock=clock)
    return TurnDependencies(
        transport=transport,
        profiles=profiles,
        generator=generator,
        ledger=ledger,
        scheduler=scheduler,
        dispatcher=FollowupDispatcher(scheduler, transport, ledger, halts),
        rate_limiter=RateLimiter(store, 4, 60),
        halts=halts,
        cooldowns=LinkCooldowns(store, clock=clock),
        history=ConversationHistory(store, clock=clock),
    )


class TestConcurrentProcessors:
    def test_two_threads_never_overlap_turns_for_one_phone(self, store, clock):
        guard = threading.Lock()
        active: dict[str, int] = {}
        peak: dict[str, int] = {}
        finished: list[str] = []

        def runner(message):
            phone = message.phone_number
            with guard:
                active[phone] = active.get(phone, 0) + 1
                peak[phone] = max(peak.get(phone, 0), active[phone])
            time.sleep(0.005)
            with guard:
                active[phone] -= 1
                finished.append(message.body)

        def make_processor():
            return QueueProcessor(
                IntakeQueue(store, clock=clock),
                ConversationLockManager(store, default_ttl=30, clock=clock),
                AutomationHaltStore(store),
                runner,
                iteration_delay=0,
                clock=clock,
            )

        intake = IntakeQueue(store, clock=clock)
        expected = []
        for i in range(8):
            intake.enqueue(PHONE_A, f"a{i}", f"SMa{i}")
            expected.append(f"a{i}")
        for i in range(4):
            intake.enqueue(PHONE_B, f"b{i}", f"SMb{i}")
            expected.append(f"b{i}")

        deadline = time.monotonic() + 10

        def drain(processor):
            while len(finished) < len(expected) and time.monotonic() < deadline:
                processor.process_queue()
                time.sleep(0.001)

        threads = [threading.Thread(target=drain, args=(make_processor(),)) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(finished) == sorted(expected)
        assert peak == {PHONE_A: 1, PHONE_B: 1}
        assert intake.depth() == 0
        assert intake.stats().processing == 0


class TestExpiredLease:
    def test_overlapping_turn_after_lease_expiry_sends_one_reply(self, store, clock, caplog):
        transport = ConsoleSmsTransport()
        agent = create_turn_agent(_turn_dependencies(store, clock, transport))
        queue = IntakeQueue(store, clock=clock)
        locks = ConversationLockManager(store, default_ttl=30, clock=clock)
        halts = AutomationHaltStore(store)
        overlapping = []

        worker_b = QueueProcessor(
            queue, locks, halts, lambda message: run_turn(agent, message),
            iteration_delay=0, clock=clock,
        )

        def slow_turn(message):
            # Outlive the 30s lease, letting worker B take the phone mid-turn.
            clock.advance(45)
            overlapping.append(worker_b.process_queue())
            return run_turn(agent, message)

        worker_a = QueueProcessor(queue, locks, halts, slow_turn, iteration_delay=0, clock=clock)
        queue.enqueue(PHONE_A, "Any news on my claim?", "SM1")
        queue.enqueue(PHONE_A, "Any news on my claim?", "SM2")

        with caplog.at_level(logging.WARNING):
            report = worker_a.process_queue(max_messages=1)

        assert overlapping[0].completed == 1
        assert overlapping[0].requeued == 0
        assert report.completed == 1
        assert [r.message for r in transport.sent] == ["Thanks, looking into it."]
        assert "already sent although this is a first attempt" in caplog.text
        assert "longer than its 30s lock" in caplog.text
