"""Periodic delivery of due follow-ups.

``FollowupDispatcher.sweep`` walks the follow-up index and hands every due
item to the SMS transport, once per item (idempotency key
``followup:<id>``).  The same per-phone delivery runs at the start of a
turn so a customer never gets a stale nudge after their newest reply.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sms_orchestrator.models import FollowupItem, SmsSendRequest
from sms_orchestrator.services.followups import FollowupScheduler
from sms_orchestrator.services.idempotency import IdempotencyLedger, followup_key
from sms_orchestrator.services.limits import AutomationHaltStore
from sms_orchestrator.services.metrics import metrics
from sms_orchestrator.services.sms_transport import SmsTransport

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 60


@dataclass
class SweepReport:
    phones: int = 0
    delivered: int = 0
    deferred: int = 0
    dropped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class FollowupDispatcher:
    def __init__(
        self,
        scheduler: FollowupScheduler,
        transport: SmsTransport,
        ledger: IdempotencyLedger,
        halts: AutomationHaltStore,
    ) -> None:
        self._scheduler = scheduler
        self._transport = transport
        self._ledger = ledger
        self._halts = halts

    def sweep(self) -> SweepReport:
        report = SweepReport()
        for phone in self._scheduler.list_phones_with_followups():
            report.phones += 1
            try:
                self.deliver_for_phone(phone, report)
            except Exception:
                # One bad phone must not stall the rest of the sweep.
                logger.exception("Follow-up sweep skipped %s", phone)
        logger.info("Follow-up sweep: %s", report.as_dict())
        return report

    def deliver_for_phone(self, phone_number: str, report: SweepReport | None = None) -> SweepReport:
        report = report or SweepReport()
        due = self._scheduler.pop_due_followups(phone_number)
        if not due:
            return report

        if self._halts.is_halted(phone_number):
            report.dropped += len(due)
            logger.info("Dropped %d follow-ups for halted %s", len(due), phone_number)
            return report

        for item in due:
            try:
                self._deliver(item, report)
            except Exception:
                report.failed += 1
                logger.exception(
                    "Follow-up %s for %s could not be delivered or rescheduled: %r",
                    item.id, phone_number, item.text,
                )
        return report

    def _deliver(self, item: FollowupItem, report: SweepReport) -> None:
        key = followup_key(item.id)
        if self._ledger.is_used(key):
            logger.info("Follow-up %s already delivered", item.id)
            return

        if not self._scheduler.within_business_hours():
            self._scheduler.schedule_at_business_open(item.phone_number, item.text, item.metadata)
            report.deferred += 1
            return

        try:
            self._transport.send(
                SmsSendRequest(
                    phone_number=item.phone_number,
                    message=item.text,
                    message_type="followup",
                )
            )
        except Exception as exc:
            attempts = int(item.metadata.get("delivery_attempts", 0)) + 1
            if attempts < MAX_DELIVERY_ATTEMPTS:
                self._scheduler.schedule_followup(
                    item.phone_number,
                    item.text,
                    RETRY_DELAY_SECONDS,
                    {**item.metadata, "delivery_attempts": attempts},
                )
                report.failed += 1
                logger.warning(
                    "Follow-up %s send failed (attempt %d/%d), retrying in %ds: %s",
                    item.id, attempts, MAX_DELIVERY_ATTEMPTS, RETRY_DELAY_SECONDS, exc,
                )
            else:
                report.dropped += 1
                logger.error(
                    "Follow-up %s to %s dropped after %d attempts: %s",
                    item.id, item.phone_number, attempts, exc,
                )
            metrics.record_count("Followup/Failed")
            return

        self._ledger.mark_used(key)
        report.delivered += 1
        metrics.record_count("Followup/Delivered")
