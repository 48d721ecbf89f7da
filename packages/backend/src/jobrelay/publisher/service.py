"""Completion publisher and outbox reconciler."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import structlog

from jobrelay.broker.base import Broker
from jobrelay.errors import TransientBrokerError
from jobrelay.publisher.outbox import Outbox, OutboxEntry
from jobrelay.schemas.admin import PublishResult
from jobrelay.schemas.event import CompletionEvent, JobStatus

logger = structlog.get_logger()

_MESSAGE_ID_NAMESPACE = uuid.UUID("6f1c1d9e-3b1a-4c55-9a57-2f0f5d3c8e10")


def message_id_for(idempotency_key: str) -> str:
    """Deterministic broker message id for a status transition."""
    return str(uuid.uuid5(_MESSAGE_ID_NAMESPACE, idempotency_key))


class StatusStore(Protocol):
    """External job status store. Raises on failure."""

    async def update_status(self, job_id: str, status: JobStatus, payload: dict[str, Any]) -> None: ...


class NullStatusStore:
    """Used when status persistence happens elsewhere; only logs."""

    async def update_status(self, job_id: str, status: JobStatus, payload: dict[str, Any]) -> None:
        logger.debug("status_store.skipped", job_id=job_id, status=status.value)


class CompletionPublisher:
    """Two-phase update-then-publish with an outbox between the phases."""

    def __init__(
        self,
        broker: Broker,
        outbox: Outbox,
        topic: str,
        status_store: Optional[StatusStore] = None,
    ):
        self.broker = broker
        self.outbox = outbox
        self.topic = topic
        self.status_store = status_store or NullStatusStore()

    async def publish_completion(self, event: CompletionEvent) -> PublishResult:
        key = event.idempotency_key
        message_id = message_id_for(key)
        log = logger.bind(job_id=event.job_id, idempotency_key=key)

        entry = OutboxEntry(
            idempotency_key=key,
            message_id=message_id,
            topic=self.topic,
            body=event.to_wire(),
            created_at=datetime.now(timezone.utc),
        )
        inserted = await self.outbox.add(entry)
        if not inserted:
            existing = await self.outbox.get(key)
            if existing is not None and not existing.pending:
                log.info("publisher.already_published")
                return PublishResult(idempotency_key=key, message_id=message_id, published=True)
            # Pending from an earlier attempt: status write may not have
            # happened, so fall through and redo both phases.
            log.info("publisher.retrying_pending")

        # Phase 1: status write
        try:
            await self.status_store.update_status(event.job_id, event.status, event.payload)
        except Exception:
            # An entry left by an earlier attempt may stand for a status that
            # is already persisted; only this call's own entry is discarded.
            if inserted:
                await self.outbox.discard(key)
            log.exception("publisher.status_write_failed", kept_pending=not inserted)
            raise

        # Phase 2: publish
        return await publish_entry(self.broker, self.outbox, entry)


async def publish_entry(broker: Broker, outbox: Outbox, entry: OutboxEntry) -> PublishResult:
    """Publish one outbox entry and record the result."""
    log = logger.bind(idempotency_key=entry.idempotency_key, message_id=entry.message_id)
    try:
        await broker.publish_raw(entry.topic, entry.body, message_id=entry.message_id)
    except TransientBrokerError as e:
        await outbox.record_failure(entry.idempotency_key, str(e))
        log.warning("publisher.publish_failed", error=str(e))
        return PublishResult(
            idempotency_key=entry.idempotency_key,
            message_id=entry.message_id,
            published=False,
            error=str(e),
        )
    await outbox.mark_published(entry.idempotency_key)
    log.info("publisher.published", topic=entry.topic)
    return PublishResult(
        idempotency_key=entry.idempotency_key, message_id=entry.message_id, published=True
    )


class OutboxReconciler:
    """Background worker that re-publishes entries stuck in the outbox.

    Usage:
        reconciler = OutboxReconciler(broker, outbox, interval=30)
        asyncio.create_task(reconciler.run_loop())
    """

    def __init__(
        self,
        broker: Broker,
        outbox: Outbox,
        interval: float = 30.0,
        grace: float = 10.0,
        batch_size: int = 100,
    ):
        self.broker = broker
        self.outbox = outbox
        self.interval = interval
        self.grace = timedelta(seconds=grace)
        self.batch_size = batch_size
        self._running = False

    async def sweep_once(self) -> int:
        """Re-publish pending entries older than the grace period."""
        published = 0
        for entry in await self.outbox.pending(self.grace, limit=self.batch_size):
            result = await publish_entry(self.broker, self.outbox, entry)
            if result.published:
                published += 1
        if published:
            logger.info("outbox.reconciled", published=published)
        return published

    async def run_loop(self) -> None:
        self._running = True
        logger.info("outbox.reconciler_started", interval=self.interval)
        while self._running:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("outbox.reconciler_error")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False
        logger.info("outbox.reconciler_stopping")
