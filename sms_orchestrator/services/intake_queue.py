"""Inbound message queue with provider-level de-duplication.

Key layout (all TTL-collected):

• ``sms:queue:list``        FIFO list of message ids (push tail, pop head)
• ``sms:queue:delayed``     sorted set of ids waiting out a retry backoff,
                            scored by the epoch second they become due
• ``sms:msg:<id>``          the :class:`QueuedMessage` record
• ``sms:processing:<id>``   copy of the record while a worker owns it
• ``sms:dedup:<provider id>`` → message id, claimed with set-if-absent

Retries are durable: a failed message is parked in the delayed set and
promoted back onto the queue by the next ``dequeue`` after its backoff,
so a worker restart never loses a pending retry.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from sms_orchestrator.models import MessageStatus, QueuedMessage, QueueStats
from sms_orchestrator.services.metrics import metrics
from sms_orchestrator.services.store import KeyValueStore

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"

QUEUE_KEY = "sms:queue:list"
DELAYED_KEY = "sms:queue:delayed"
MESSAGE_KEY_PREFIX = "sms:msg:"
PROCESSING_KEY_PREFIX = "sms:processing:"
DEDUP_KEY_PREFIX = "sms:dedup:"

HEALTHY_DEPTH = 100
MAX_DEQUEUE_SKIPS = 10


class IntakeQueue:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        dedup_ttl: int = 300,
        message_ttl: int = 3600,
        max_attempts: int = 3,
        retry_backoff_seconds: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._dedup_ttl = dedup_ttl
        self._message_ttl = message_ttl
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff_seconds
        self._clock = clock

    # ── Intake ──────────────────────────────────────────────────────

    def enqueue(
        self,
        phone_number: str,
        body: str,
        provider_message_id: str,
        *,
        user_id: int | None = None,
        conversation_id: str | None = None,
    ) -> str:
        """Queue an inbound SMS.  Returns the new id or :data:`DUPLICATE`."""
        message_id = uuid.uuid4().hex
        claimed = self._store.set_if_absent(
            f"{DEDUP_KEY_PREFIX}{provider_message_id}", message_id, self._dedup_ttl,
        )
        if not claimed:
            logger.info("Duplicate delivery %s ignored", provider_message_id)
            metrics.record_count("Queue/Duplicate")
            return DUPLICATE

        message = QueuedMessage(
            id=message_id,
            phone_number=phone_number,
            body=body,
            provider_message_id=provider_message_id,
            user_id=user_id,
            conversation_id=conversation_id,
        )
        try:
            self._save(message)
            depth = self._store.list_push(QUEUE_KEY, message_id)
        except Exception:
            # Release the dedup claim so the provider's redelivery is accepted.
            self._store.delete(f"{DEDUP_KEY_PREFIX}{provider_message_id}")
            self._store.delete(f"{MESSAGE_KEY_PREFIX}{message_id}")
            logger.exception("Enqueue of %s from %s failed", provider_message_id, phone_number)
            raise
        metrics.record_count("Queue/Enqueued")
        logger.info("Enqueued %s from %s (depth=%d)", message_id, phone_number, depth)
        return message_id

    def requeue(self, message: QueuedMessage) -> str:
        """Re-create *message* at the tail under a new id, bypassing dedup.

        Used on lock contention; ``attempts`` is carried over unchanged.
        """
        fresh = message.model_copy(
            update={
                "id": uuid.uuid4().hex,
                "status": MessageStatus.PENDING,
                "processing_started_at": None,
            },
        )
        self._save(fresh)
        self._store.list_push(QUEUE_KEY, fresh.id)
        logger.debug("Requeued %s as %s", message.id, fresh.id)
        return fresh.id

    # ── Consumption ─────────────────────────────────────────────────

    def dequeue(self) -> QueuedMessage | None:
        """Pop the oldest pending message and mark it processing."""
        self._promote_due_retries()

        for _ in range(MAX_DEQUEUE_SKIPS):
            message_id = self._store.list_pop(QUEUE_KEY)
            if message_id is None:
                return None

            raw = self._store.get(f"{MESSAGE_KEY_PREFIX}{message_id}")
            if raw is None:
                logger.warning("Queued message %s expired before processing, skipping", message_id)
                continue

            message = QueuedMessage.model_validate(raw)
            message.status = MessageStatus.PROCESSING
            message.processing_started_at = self._clock()
            self._save(message)
            self._store.set(
                f"{PROCESSING_KEY_PREFIX}{message.id}",
                message.model_dump(mode="json"),
                self._message_ttl,
            )
            return message

        logger.warning("Dequeue gave up after %d expired entries", MAX_DEQUEUE_SKIPS)
        return None

    def mark_completed(self, message_id: str) -> None:
        self._store.delete(f"{PROCESSING_KEY_PREFIX}{message_id}")
        self._store.delete(f"{MESSAGE_KEY_PREFIX}{message_id}")
        metrics.record_count("Queue/Completed")

    def mark_failed(self, message: QueuedMessage, error: str) -> bool:
        """Record a failed turn.  Returns ``True`` if a retry was scheduled."""
        self._store.delete(f"{PROCESSING_KEY_PREFIX}{message.id}")
        message.attempts += 1
        message.error = error
        message.processing_started_at = None

        if message.attempts < self._max_attempts:
            delay = message.attempts * self._retry_backoff
            message.status = MessageStatus.PENDING
            self._save(message)
            self._store.zset_add(DELAYED_KEY, message.id, self._clock() + delay)
            metrics.record_count("Queue/Retried")
            logger.warning(
                "Message %s failed (attempt %d/%d), retrying in %ds: %s",
                message.id, message.attempts, self._max_attempts, delay, error,
            )
            return True

        message.status = MessageStatus.FAILED
        self._save(message)
        metrics.record_count("Queue/Dropped")
        logger.error(
            "Message %s from %s permanently failed after %d attempts: %s",
            message.id, message.phone_number, message.attempts, error,
        )
        return False

    # ── Introspection / maintenance ─────────────────────────────────

    def get(self, message_id: str) -> QueuedMessage | None:
        raw = self._store.get(f"{MESSAGE_KEY_PREFIX}{message_id}")
        return QueuedMessage.model_validate(raw) if raw is not None else None

    def depth(self) -> int:
        return self._store.list_length(QUEUE_KEY)

    def stats(self) -> QueueStats:
        depth = self.depth()
        return QueueStats(
            queue_depth=depth,
            delayed_retries=self._store.zset_count(DELAYED_KEY),
            processing=len(self._store.scan(f"{PROCESSING_KEY_PREFIX}*")),
            healthy=depth < HEALTHY_DEPTH,
        )

    def recover_stale(self, max_age_seconds: float) -> int:
        """Requeue messages whose worker died mid-turn.

        A processing record older than *max_age_seconds* is claimed with a
        compare-and-delete so that only one recoverer requeues it.
        """
        now = self._clock()
        recovered = 0
        for key in self._store.scan(f"{PROCESSING_KEY_PREFIX}*"):
            raw = self._store.get(key)
            if raw is None:
                continue
            message = QueuedMessage.model_validate(raw)
            started = message.processing_started_at or 0.0
            if now - started < max_age_seconds:
                continue
            if not self._store.compare_and_set(key, raw, None, self._message_ttl):
                continue
            self._store.delete(f"{MESSAGE_KEY_PREFIX}{message.id}")
            new_id = self.requeue(message)
            recovered += 1
            logger.warning(
                "Recovered stale message %s (%.0fs in processing) as %s",
                message.id, now - started, new_id,
            )
        return recovered

    def clear_all(self) -> int:
        removed = 0
        for pattern in (
            "sms:queue:*",
            f"{MESSAGE_KEY_PREFIX}*",
            f"{PROCESSING_KEY_PREFIX}*",
            f"{DEDUP_KEY_PREFIX}*",
        ):
            removed += self._store.delete_pattern(pattern)
        logger.warning("Queue cleared (%d keys removed)", removed)
        return removed

    # ── Internal ────────────────────────────────────────────────────

    def _save(self, message: QueuedMessage) -> None:
        self._store.set(
            f"{MESSAGE_KEY_PREFIX}{message.id}",
            message.model_dump(mode="json"),
            self._message_ttl,
        )

    def _promote_due_retries(self) -> None:
        for message_id in self._store.zset_pop_due(DELAYED_KEY, self._clock()):
            self._store.list_push(QUEUE_KEY, message_id)
            logger.debug("Retry %s promoted back onto the queue", message_id)
