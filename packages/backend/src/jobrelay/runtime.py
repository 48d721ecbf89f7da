"""Relay runtime — one explicitly owned container for the whole pipeline.

Learn: Nothing in JobRelay is ambient global state. The broker, dedup store,
registry, buffer, dispatcher, consumer pool and background loops are built
here, passed to whoever needs them, and started / stopped together:

    runtime = RelayRuntime.from_settings(settings)
    await runtime.start()
    ...
    await runtime.stop()   # consumer grace → nack leftovers → drain sessions

The FastAPI app keeps its runtime on app.state.relay; the standalone relay
process owns one directly. Tests build one from in-memory parts.
"""

import asyncio
from typing import Optional

import structlog

from jobrelay.auth.jwt import Authenticator, JWTAuthenticator
from jobrelay.broker import Broker, get_broker
from jobrelay.config import Settings
from jobrelay.dedup import DedupStore, get_dedup_store
from jobrelay.dispatcher.consumer import ConsumerConfig, QueueConsumer
from jobrelay.dispatcher.notifier import NotificationDispatcher
from jobrelay.metrics import RelayStats
from jobrelay.publisher import CompletionPublisher, MemoryOutbox, Outbox, OutboxReconciler
from jobrelay.realtime.buffer import OfflineBuffer
from jobrelay.realtime.registry import ConnectionRegistry, RegistrySweeper
from jobrelay.realtime.websocket import SessionGateway

logger = structlog.get_logger()


class RelayRuntime:
    def __init__(
        self,
        settings: Settings,
        broker: Broker,
        dedup: DedupStore,
        registry: Optional[ConnectionRegistry] = None,
        buffer: Optional[OfflineBuffer] = None,
        outbox: Optional[Outbox] = None,
        authenticator: Optional[Authenticator] = None,
        stats: Optional[RelayStats] = None,
    ):
        self.settings = settings
        self.stats = stats or RelayStats()
        self.broker = broker
        self.dedup = dedup
        self.registry = registry or ConnectionRegistry(
            shards=settings.registry_shards,
            heartbeat_timeout=settings.heartbeat_timeout_seconds,
        )
        self.buffer = buffer or OfflineBuffer(
            ttl=settings.buffer_ttl_seconds,
            max_per_subject=settings.buffer_max_per_subject,
            stats=self.stats,
        )
        self.dispatcher = NotificationDispatcher(
            self.registry,
            self.buffer,
            stats=self.stats,
            push_timeout=settings.push_timeout_seconds,
        )
        self.consumer = QueueConsumer(
            broker,
            dedup,
            self.dispatcher,
            config=ConsumerConfig(
                queue=settings.queue,
                worker_count=settings.worker_count,
                batch_size=settings.receive_batch_size,
                visibility_timeout=settings.visibility_timeout_seconds,
                wait_seconds=settings.receive_wait_seconds,
                dispatch_timeout=settings.dispatch_timeout_seconds,
                shutdown_grace=settings.shutdown_grace_seconds,
            ),
            stats=self.stats,
        )
        self.gateway = SessionGateway(
            self.registry,
            self.dispatcher,
            authenticator or JWTAuthenticator(),
            push_timeout=settings.push_timeout_seconds,
            heartbeat_timeout=settings.heartbeat_timeout_seconds,
            allow_anonymous=settings.environment == "development",
        )
        self.outbox = outbox or MemoryOutbox()
        self.publisher = CompletionPublisher(broker, self.outbox, topic=settings.topic)
        self.sweeper = RegistrySweeper(
            self.registry, self.buffer, interval=settings.sweep_interval_seconds, dedup=dedup
        )
        self.reconciler = OutboxReconciler(
            broker,
            self.outbox,
            interval=settings.outbox_sweep_interval_seconds,
            grace=settings.outbox_grace_seconds,
        )
        self._tasks: list[asyncio.Task] = []
        self.started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayRuntime":
        broker = get_broker(
            settings.broker_backend,
            redis_url=settings.redis_url,
            max_receive_count=settings.max_receive_count,
        )
        dedup = get_dedup_store(
            settings.dedup_backend,
            ttl_seconds=settings.dedup_ttl_seconds,
            shards=settings.registry_shards,
            redis_url=settings.redis_url,
            namespace=settings.queue,
        )
        outbox: Outbox
        if settings.outbox_backend == "sql":
            from jobrelay.db.engine import async_session_factory
            from jobrelay.publisher.sql_outbox import SqlOutbox

            outbox = SqlOutbox(async_session_factory)
        else:
            outbox = MemoryOutbox()
        return cls(settings, broker, dedup, outbox=outbox)

    async def start(self, run_consumer: Optional[bool] = None) -> None:
        if self.started:
            return
        if run_consumer is None:
            run_consumer = self.settings.run_consumer
        await self.broker.bind_queue(self.settings.topic, self.settings.queue)
        if run_consumer:
            await self.consumer.start()
        self._tasks.append(asyncio.create_task(self.sweeper.run_loop(), name="jobrelay-sweeper"))
        if self.settings.outbox_enabled:
            self._tasks.append(
                asyncio.create_task(self.reconciler.run_loop(), name="jobrelay-reconciler")
            )
        self.started = True
        logger.info(
            "runtime.started",
            broker=self.broker.name,
            topic=self.settings.topic,
            queue=self.settings.queue,
            consumer=run_consumer,
        )

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        await self.consumer.stop()
        self.sweeper.stop()
        self.reconciler.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.registry.drain()
        await self.broker.close()
        await self.dedup.close()
        logger.info("runtime.stopped", **self.stats.snapshot())

    async def snapshot(self) -> dict:
        queue = self.settings.queue
        return {
            "stats": self.stats.snapshot(),
            "live_sessions": len(self.registry),
            "live_subjects": self.registry.subject_count(),
            "buffered_events": len(self.buffer),
            "queue_depth": await self.broker.depth(queue),
            "dead_letter_depth": await self.broker.dead_letter_depth(queue),
            "workers": self.consumer.worker_count,
        }
