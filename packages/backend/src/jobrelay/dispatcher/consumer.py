"""Queue consumer pool — at-least-once deliveries in, effectively-once out.

Learn: A fixed pool of independent workers. Each worker runs two tasks
joined by a bounded asyncio.Queue:

1. Puller  — broker.receive() batches into the worker's inbox
2. Processor — takes one message at a time and decides ack or nack:

   0. lease check: a prefetched message whose visibility ran out while it
      waited in the inbox is skipped (the broker may have handed it to
      another worker); one past half its lease is extended first
   a. deserialize; malformed → nack(retry=False), broker dead-letters it
   b. message_id already in the dedup store → ack, skip (redelivery)
   c. dispatch within dispatch_timeout, extending visibility meanwhile
   d. success → record DeliveryRecord, then ack
   e. failure → nack; the broker redelivers up to its own limit

Workers share nothing except the dedup store and the registry (both
internally synchronized). A message is owned by exactly one worker from
receive until ack/nack, which is what preserves the broker's per-message
ordering end to end.

Shutdown: pullers stop first; processors finish what is in flight until
the grace deadline; anything still unprocessed is nacked so the broker
redelivers it to the next process.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import structlog

from jobrelay.broker.base import Broker, DeadLetter, QueueMessage
from jobrelay.dedup.store import DedupStore, DeliveryRecord
from jobrelay.dispatcher.notifier import DeliveryOutcome, NotificationDispatcher
from jobrelay.errors import DispatchFailed, MalformedMessageError, TransientBrokerError
from jobrelay.metrics import RelayStats
from jobrelay.schemas.event import CompletionEvent

logger = structlog.get_logger()


class ProcessResult(str, Enum):
    ACKED = "acked"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    NACKED = "nacked"
    EXPIRED = "expired"


@dataclass
class ConsumerConfig:
    """Configuration for the consumer pool."""

    queue: str = "job-completions.notifier"
    worker_count: int = 4
    batch_size: int = 10
    visibility_timeout: float = 30.0
    wait_seconds: float = 1.0
    dispatch_timeout: float = 10.0
    shutdown_grace: float = 10.0
    error_backoff: float = 1.0  # pause after a transient receive error


class _Worker:
    """One puller + processor pair. Never shares messages with other workers."""

    def __init__(self, consumer: "QueueConsumer", index: int):
        self.consumer = consumer
        self.index = index
        self.inbox: asyncio.Queue[QueueMessage] = asyncio.Queue(
            maxsize=consumer.config.batch_size
        )
        self.puller: Optional[asyncio.Task] = None
        self.processor: Optional[asyncio.Task] = None
        self.in_flight: Optional[QueueMessage] = None

    def start(self) -> None:
        self.puller = asyncio.create_task(self._pull_loop(), name=f"jobrelay-pull-{self.index}")
        self.processor = asyncio.create_task(self._process_loop(), name=f"jobrelay-process-{self.index}")

    async def _pull_loop(self) -> None:
        c = self.consumer
        cfg = c.config
        while c.running:
            free = cfg.batch_size - self.inbox.qsize()
            if free <= 0:
                await asyncio.sleep(0.01)
                continue
            try:
                batch = await c.broker.receive(
                    cfg.queue, free, cfg.visibility_timeout, wait_seconds=cfg.wait_seconds
                )
            except TransientBrokerError as e:
                c.stats.broker_error("receive")
                logger.warning("consumer.receive_failed", worker=self.index, error=str(e))
                await asyncio.sleep(cfg.error_backoff)
                continue
            if not batch and cfg.wait_seconds <= 0:
                # Short poll came back empty; yield instead of spinning
                await asyncio.sleep(0.05)
                continue
            for message in batch:
                await self.inbox.put(message)

    async def _process_loop(self) -> None:
        c = self.consumer
        while True:
            message = await self.inbox.get()
            self.in_flight = message
            try:
                await c.process(message)
            except Exception:
                # process() handles every expected failure itself
                logger.exception("consumer.unexpected_error", message_id=message.message_id)
            finally:
                self.in_flight = None
                self.inbox.task_done()

    def drain_inbox(self) -> list[QueueMessage]:
        leftover = []
        while not self.inbox.empty():
            leftover.append(self.inbox.get_nowait())
            self.inbox.task_done()
        return leftover


class QueueConsumer:
    """Fixed-size pool of independent queue workers."""

    def __init__(
        self,
        broker: Broker,
        dedup: DedupStore,
        dispatcher: NotificationDispatcher,
        config: Optional[ConsumerConfig] = None,
        stats: Optional[RelayStats] = None,
    ):
        self.broker = broker
        self.dedup = dedup
        self.dispatcher = dispatcher
        self.config = config or ConsumerConfig()
        self.stats = stats or dispatcher.stats
        self.running = False
        self._workers: list[_Worker] = []
        broker.add_dead_letter_listener(self._on_dead_letter)

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    # ─── Lifecycle ───────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.stats.mark_started()
        self._workers = [_Worker(self, i) for i in range(self.config.worker_count)]
        for worker in self._workers:
            worker.start()
        logger.info(
            "consumer.started",
            queue=self.config.queue,
            workers=self.config.worker_count,
            batch_size=self.config.batch_size,
        )

    async def stop(self) -> None:
        """Stop pulling, finish in-flight work up to the grace deadline, nack the rest."""
        if not self.running:
            return
        self.running = False
        pullers = [w.puller for w in self._workers if w.puller]
        for task in pullers:
            task.cancel()
        await asyncio.gather(*pullers, return_exceptions=True)

        # Let processors work through their inboxes until the deadline.
        joins = [asyncio.create_task(w.inbox.join()) for w in self._workers]
        if joins:
            done, pending = await asyncio.wait(joins, timeout=self.config.shutdown_grace)
            for task in pending:
                task.cancel()

        unfinished: list[QueueMessage] = []
        for worker in self._workers:
            if worker.in_flight is not None:
                unfinished.append(worker.in_flight)
            if worker.processor:
                worker.processor.cancel()
        await asyncio.gather(
            *(w.processor for w in self._workers if w.processor), return_exceptions=True
        )
        for worker in self._workers:
            unfinished.extend(worker.drain_inbox())

        for message in unfinished:
            await self._nack(message, reason="shutdown")

        logger.info("consumer.stopped", nacked_on_shutdown=len(unfinished), **self.stats.snapshot())
        self._workers = []

    # ─── Per-message processing ──────────────────────────

    async def process(self, message: QueueMessage) -> ProcessResult:
        """Process one delivery end to end and ack or nack it."""
        log = logger.bind(
            message_id=message.message_id,
            queue=message.queue,
            receive_count=message.receive_count,
        )
        if not await self._renew_lease(message, log):
            self.stats.incr("lease_expired")
            log.warning("consumer.lease_expired")
            return ProcessResult.EXPIRED
        self.stats.incr("received")

        # (a) deserialize
        try:
            event = CompletionEvent.from_wire(message.body, attempt=message.receive_count)
        except MalformedMessageError as e:
            self.stats.incr("malformed")
            log.warning("consumer.malformed", error=str(e))
            await self._nack(message, reason="malformed", retry=False)
            return ProcessResult.MALFORMED

        log = log.bind(job_id=event.job_id, subject_id=event.subject_id)

        # (b) idempotence guard
        if await self.dedup.contains(message.message_id):
            self.stats.incr("deduplicated")
            log.info("consumer.duplicate")
            await self._ack(message)
            return ProcessResult.DUPLICATE

        # (c) dispatch within a bounded time
        try:
            outcome = await self._dispatch_with_visibility(message, event)
        except asyncio.TimeoutError:
            log.warning("consumer.dispatch_timeout", timeout=self.config.dispatch_timeout)
            await self._nack(message, reason="timeout")
            return ProcessResult.NACKED
        except Exception as e:
            log.exception("consumer.dispatch_error", error=str(e))
            await self._nack(message, reason="error")
            return ProcessResult.NACKED

        # (e) nothing delivered, nothing buffered
        try:
            outcome.raise_for_failure()
        except DispatchFailed as e:
            log.warning("consumer.undelivered", failed=len(outcome.failed), error=str(e))
            await self._nack(message, reason="undelivered")
            return ProcessResult.NACKED

        # (d) record, then ack
        await self._record(message, outcome, log)
        await self._ack(message)
        log.info(
            "consumer.processed",
            delivered=len(outcome.delivered),
            buffered=outcome.buffered,
        )
        return ProcessResult.ACKED

    async def _renew_lease(self, message: QueueMessage, log) -> bool:
        """False if this worker no longer owns the delivery."""
        vt = self.config.visibility_timeout
        remaining = message.visible_until - self.broker.now()
        if remaining <= 0:
            return False
        if remaining >= vt / 2:
            return True
        try:
            return await self.broker.extend_visibility(message, vt)
        except TransientBrokerError as e:
            # Still owned for `remaining` seconds; dispatch extends again
            self.stats.broker_error("extend_visibility")
            log.warning("consumer.extend_failed", error=str(e))
            return True

    async def _dispatch_with_visibility(
        self, message: QueueMessage, event: CompletionEvent
    ) -> DeliveryOutcome:
        """Run dispatch under dispatch_timeout, extending visibility while it runs.

        Raises asyncio.TimeoutError if the dispatcher does not finish in time.
        """
        cfg = self.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.dispatch_timeout
        extend_every = max(cfg.visibility_timeout / 2, 0.01)
        task = asyncio.create_task(self.dispatcher.dispatch(event))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                done, _ = await asyncio.wait({task}, timeout=min(remaining, extend_every))
                if done:
                    return task.result()
                try:
                    await self.broker.extend_visibility(message, cfg.visibility_timeout)
                except TransientBrokerError as e:
                    self.stats.broker_error("extend_visibility")
                    logger.warning(
                        "consumer.extend_failed", message_id=message.message_id, error=str(e)
                    )
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _record(self, message: QueueMessage, outcome: DeliveryOutcome, log) -> None:
        record = DeliveryRecord(
            message_id=message.message_id,
            delivered_at=datetime.now(timezone.utc),
            target_session_ids=outcome.target_session_ids,
        )
        try:
            await self.dedup.record(record)
        except Exception:
            # The push already happened; acking still beats a redelivery.
            log.exception("consumer.record_failed")

    async def _ack(self, message: QueueMessage) -> None:
        try:
            ok = await self.broker.acknowledge(message)
        except TransientBrokerError as e:
            # The dedup record catches the redelivery this causes.
            self.stats.broker_error("acknowledge")
            logger.warning("consumer.ack_failed", message_id=message.message_id, error=str(e))
            return
        if not ok:
            logger.warning("consumer.ack_stale_receipt", message_id=message.message_id)

    async def _nack(self, message: QueueMessage, reason: str, retry: bool = True) -> None:
        self.stats.nack(reason)
        try:
            await self.broker.negative_acknowledge(message, retry=retry)
        except TransientBrokerError as e:
            # Visibility expiry returns the message anyway.
            self.stats.broker_error("negative_acknowledge")
            logger.warning("consumer.nack_failed", message_id=message.message_id, error=str(e))

    def _on_dead_letter(self, dead: DeadLetter) -> None:
        self.stats.incr("dead_lettered")
