"""Test fixtures — the relay pipeline assembled from in-memory parts.

Learn: Testing pattern for the delivery pipeline:

1. Unit fixtures (broker, dedup, registry, buffer, dispatcher, consumer)
   share one FakeClock, so a test can expire a visibility timeout or a
   buffer TTL by calling clock.advance() instead of sleeping.
2. The HTTP fixtures build a RelayRuntime from the same in-memory backends
   and inject it into create_app(), exactly as the lifespan would.
3. Nothing needs Redis or Postgres; the Redis backends are tested against
   fakeredis in their own modules.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fakes import QUEUE, TOPIC, FakeClock
from jobrelay.broker.memory import MemoryBroker
from jobrelay.config import Settings
from jobrelay.dedup.store import MemoryDedupStore
from jobrelay.dispatcher.consumer import ConsumerConfig, QueueConsumer
from jobrelay.dispatcher.notifier import NotificationDispatcher
from jobrelay.main import create_app
from jobrelay.metrics import RelayStats
from jobrelay.realtime.buffer import OfflineBuffer
from jobrelay.realtime.registry import ConnectionRegistry
from jobrelay.runtime import RelayRuntime


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def stats():
    return RelayStats()


@pytest_asyncio.fixture()
async def broker(clock):
    """Memory broker with the notifier queue bound to the completions topic."""
    b = MemoryBroker(max_receive_count=3, clock=clock)
    await b.bind_queue(TOPIC, QUEUE)
    return b


@pytest.fixture()
def dedup(clock):
    return MemoryDedupStore(ttl_seconds=3600, shards=4, clock=clock)


@pytest.fixture()
def registry(clock):
    return ConnectionRegistry(shards=4, heartbeat_timeout=60, clock=clock)


@pytest.fixture()
def buffer(clock, stats):
    return OfflineBuffer(ttl=300, max_per_subject=5, clock=clock, stats=stats)


@pytest.fixture()
def dispatcher(registry, buffer, stats):
    return NotificationDispatcher(registry, buffer, stats=stats, push_timeout=0.2)


@pytest.fixture()
def consumer_config():
    return ConsumerConfig(
        queue=QUEUE,
        worker_count=2,
        batch_size=5,
        visibility_timeout=30,
        wait_seconds=0.05,
        dispatch_timeout=1.0,
        shutdown_grace=1.0,
        error_backoff=0.01,
    )


@pytest.fixture()
def consumer(broker, dedup, dispatcher, consumer_config, stats):
    return QueueConsumer(broker, dedup, dispatcher, config=consumer_config, stats=stats)


# ─── Application fixtures ────────────────────────────────


@pytest.fixture()
def relay_settings():
    return Settings(
        environment="development",
        broker_backend="memory",
        dedup_backend="memory",
        outbox_backend="memory",
        worker_count=1,
        receive_wait_seconds=0.05,
        dispatch_timeout_seconds=2.0,
        shutdown_grace_seconds=1.0,
        sweep_interval_seconds=3600,
        admin_token="",
    )


@pytest.fixture()
def runtime(relay_settings):
    return RelayRuntime(
        relay_settings,
        MemoryBroker(max_receive_count=relay_settings.max_receive_count),
        MemoryDedupStore(ttl_seconds=relay_settings.dedup_ttl_seconds),
    )


@pytest.fixture()
def app(runtime):
    return create_app(runtime)


@pytest_asyncio.fixture()
async def client(app, runtime):
    """HTTP client against an app whose runtime is already started.

    Learn: ASGITransport does not run the lifespan, so the fixture starts
    and stops the runtime itself.
    """
    await runtime.start()
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        await runtime.stop()
