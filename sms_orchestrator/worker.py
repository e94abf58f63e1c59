"""Queue processor: drains the intake queue one turn at a time.

Each iteration dequeues the oldest message, takes the per-phone lease,
runs the turn and records the result.  Many processors (threads or
processes) can drain the same queue; the lease keeps turns for one phone
from overlapping, and messages for a busy phone go back to the tail.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from sms_orchestrator.models import QueuedMessage
from sms_orchestrator.services.intake_queue import IntakeQueue
from sms_orchestrator.services.limits import AutomationHaltStore
from sms_orchestrator.services.locks import ConversationLockManager
from sms_orchestrator.services.metrics import metrics

logger = logging.getLogger(__name__)

ITERATION_DELAY_SECONDS = 0.1
DEFAULT_MAX_MESSAGES = 100


@dataclass
class ProcessorReport:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    dropped: int = 0
    requeued: int = 0
    halted: int = 0
    skipped: bool = False
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class QueueProcessor:
    def __init__(
        self,
        queue: IntakeQueue,
        locks: ConversationLockManager,
        halts: AutomationHaltStore,
        turn_runner: Callable[[QueuedMessage], Any],
        *,
        iteration_delay: float = ITERATION_DELAY_SECONDS,
        stale_after_seconds: float = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._locks = locks
        self._halts = halts
        self._run_turn = turn_runner
        self._iteration_delay = iteration_delay
        self._stale_after = stale_after_seconds
        self._clock = clock
        self._running = False
        self._guard = threading.Lock()
        self._stop = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the loop to exit after the message in hand."""
        self._stop.set()

    def recover_stale(self) -> int:
        return self._queue.recover_stale(self._stale_after)

    # ── Draining ────────────────────────────────────────────────────

    def process_queue(self, max_messages: int = DEFAULT_MAX_MESSAGES) -> ProcessorReport:
        """Process up to *max_messages*; a concurrent call on the same instance is a no-op."""
        with self._guard:
            if self._running:
                logger.info("Queue processor already running; skipping")
                return ProcessorReport(skipped=True)
            self._running = True

        started = time.perf_counter()
        report = ProcessorReport()
        try:
            self._drain(report, max_messages)
        finally:
            self._running = False
            report.duration_ms = (time.perf_counter() - started) * 1000

        if report.processed:
            logger.info("Queue processor pass: %s", report.as_dict())
        return report

    def _drain(self, report: ProcessorReport, max_messages: int) -> None:
        bounced_in_a_row = 0
        while report.processed < max_messages and not self._stop.is_set():
            message = self._queue.dequeue()
            if message is None:
                return
            report.processed += 1

            if self._process_one(message, report):
                bounced_in_a_row = 0
            else:
                bounced_in_a_row += 1
                # Everything left belongs to phones another worker is serving.
                if bounced_in_a_row >= self._queue.depth():
                    return

            time.sleep(self._iteration_delay)

    def _process_one(self, message: QueuedMessage, report: ProcessorReport) -> bool:
        """Handle one message.  Returns ``False`` only on lock contention."""
        phone = message.phone_number

        if self._halts.is_halted(phone):
            self._queue.mark_completed(message.id)
            report.halted += 1
            logger.info("Skipping %s: automation halted for %s", message.id, phone)
            return True

        if not self._locks.acquire(phone):
            new_id = self._queue.requeue(message)
            self._queue.mark_completed(message.id)
            report.requeued += 1
            metrics.record_count("Queue/LockContention")
            logger.info("Conversation %s busy; %s requeued as %s", phone, message.id, new_id)
            return False

        turn_started = self._clock()
        try:
            self._run_turn(message)
        except Exception as exc:
            report.failed += 1
            logger.exception("Turn for %s (message %s) failed", phone, message.id)
            if self._queue.mark_failed(message, f"{type(exc).__name__}: {exc}"):
                report.retried += 1
            else:
                report.dropped += 1
        else:
            self._queue.mark_completed(message.id)
            report.completed += 1
        finally:
            elapsed = self._clock() - turn_started
            if elapsed > self._locks.default_ttl:
                logger.warning(
                    "Turn for %s took %.1fs, longer than its %ss lock; "
                    "another worker may have overlapped it",
                    phone, elapsed, self._locks.default_ttl,
                )
            self._locks.release(phone)
        return True

    # ── Long-lived worker ───────────────────────────────────────────

    def run_forever(self, poll_interval: float = 1.0) -> None:
        """Drain continuously until :meth:`stop` is called."""
        self._stop.clear()
        last_recovery = 0.0
        logger.info("Queue worker started (poll=%.1fs)", poll_interval)
        while not self._stop.is_set():
            now = self._clock()
            if now - last_recovery >= self._stale_after:
                recovered = self.recover_stale()
                if recovered:
                    logger.warning("Recovered %d stale messages", recovered)
                last_recovery = now

            report = self.process_queue()
            if report.processed == 0:
                self._stop.wait(poll_interval)
        logger.info("Queue worker stopped")
