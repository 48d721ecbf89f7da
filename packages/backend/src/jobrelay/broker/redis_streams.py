"""Redis Streams broker — the durable production backend.

Learn: Redis Streams with consumer groups give us the broker contract
directly:

  topic            → a Redis set naming the queue streams bound to it
  queue            → a stream + one consumer group ("jobrelay")
  receive          → XAUTOCLAIM (expired / nacked deliveries) then
                     XREADGROUP ">" (new messages)
  visibility       → the pending entry's idle time; an entry idle longer
                     than the visibility timeout is reclaimable
  receive count    → the pending entry's delivery counter (XPENDING)
  acknowledge      → XACK + XDEL
  extend           → XCLAIM ... IDLE 0 JUSTID (resets idle, keeps count)
  nack             → XCLAIM to a parking consumer, IDLE <huge> JUSTID
                     (reclaimable at once)
  receipt          → "<entry id>#<delivery count>"; ack, extend and nack
                     check it against XPENDING so a stale receipt is refused
  dead-letter path → a second stream "{queue}.dlq"

Entries survive process restarts because they live in Redis, not here.
Connection and timeout errors surface as TransientBrokerError.
"""

import socket
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobrelay.broker.base import (
    Broker,
    DeadLetter,
    QueueMessage,
    dead_letter_queue,
    new_message_id,
)
from jobrelay.errors import TransientBrokerError

logger = structlog.get_logger()

GROUP = "jobrelay"
# Pseudo-consumer that holds nacked entries until the next receive reclaims them.
NACKED_CONSUMER = "jobrelay-nacked"
# Idle time assigned on nack so the entry is reclaimable by the next receive.
_NACK_IDLE_MS = 2**40


class RedisStreamsBroker(Broker):
    """Broker backed by Redis Streams consumer groups."""

    def __init__(
        self,
        client: aioredis.Redis,
        max_receive_count: int = 3,
        key_prefix: str = "jobrelay:",
        consumer_name: Optional[str] = None,
    ):
        super().__init__(max_receive_count=max_receive_count)
        self._redis = client
        self._prefix = key_prefix
        self._consumer = consumer_name or f"{socket.gethostname()}-{id(self):x}"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamsBroker":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    @property
    def name(self) -> str:
        return "redis"

    # ─── Keys ────────────────────────────────────────────

    def _topic_key(self, topic: str) -> str:
        return f"{self._prefix}topic:{topic}"

    def _stream(self, queue: str) -> str:
        return f"{self._prefix}q:{queue}"

    def _dlq_stream(self, queue: str) -> str:
        return f"{self._prefix}q:{dead_letter_queue(queue)}"

    def _poison_key(self, queue: str) -> str:
        return f"{self._prefix}poison:{queue}"

    # ─── Topology ────────────────────────────────────────

    async def bind_queue(self, topic: str, queue: str) -> None:
        async with self._guard("bind_queue"):
            await self._redis.sadd(self._topic_key(topic), queue)
            try:
                await self._redis.xgroup_create(
                    self._stream(queue), GROUP, id="0", mkstream=True
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    # ─── Producer side ───────────────────────────────────

    async def publish_raw(
        self,
        topic: str,
        body: str,
        message_id: Optional[str] = None,
    ) -> str:
        message_id = message_id or new_message_id()
        async with self._guard("publish"):
            queues = await self._redis.smembers(self._topic_key(topic))
            if not queues:
                logger.warning("broker.no_bound_queues", topic=topic, message_id=message_id)
            for queue in queues:
                await self._redis.xadd(
                    self._stream(queue), {"message_id": message_id, "body": body}
                )
        return message_id

    # ─── Consumer side ───────────────────────────────────

    async def receive(
        self,
        queue: str,
        max_batch: int,
        visibility_timeout: float,
        wait_seconds: float = 0.0,
    ) -> list[QueueMessage]:
        stream = self._stream(queue)
        vt_ms = int(visibility_timeout * 1000)
        batch: list[QueueMessage] = []

        async with self._guard("receive"):
            # 1. Reclaim deliveries whose visibility expired (or were nacked)
            claimed = await self._redis.xautoclaim(
                stream, GROUP, self._consumer,
                min_idle_time=vt_ms, start_id="0-0", count=max_batch,
            )
            for entry_id, fields in _claimed_entries(claimed):
                count = await self._delivery_count(stream, entry_id)
                poisoned = await self._redis.sismember(self._poison_key(queue), entry_id)
                if poisoned or count > self.max_receive_count:
                    await self._dead_letter(queue, entry_id, fields, count - 1)
                    continue
                batch.append(self._message(queue, entry_id, fields, count, vt_ms))

            # 2. New messages
            remaining = max_batch - len(batch)
            if remaining > 0:
                block = int(wait_seconds * 1000) if wait_seconds > 0 and not batch else None
                response = await self._redis.xreadgroup(
                    GROUP, self._consumer, {stream: ">"}, count=remaining, block=block
                )
                for entry_id, fields in _read_entries(response):
                    if fields:
                        batch.append(self._message(queue, entry_id, fields, 1, vt_ms))

        return batch

    def _message(
        self, queue: str, entry_id: str, fields: dict, count: int, vt_ms: int
    ) -> QueueMessage:
        return QueueMessage(
            message_id=fields.get("message_id", entry_id),
            queue=queue,
            body=fields.get("body", ""),
            receipt=_receipt(entry_id, count),
            receive_count=count,
            visible_until=datetime.now(timezone.utc).timestamp() + vt_ms / 1000,
        )

    async def _delivery_count(self, stream: str, entry_id: str) -> int:
        pending = await self._redis.xpending_range(
            stream, GROUP, min=entry_id, max=entry_id, count=1
        )
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    async def _dead_letter(self, queue: str, entry_id: str, fields: dict, count: int) -> None:
        now = datetime.now(timezone.utc)
        await self._redis.xadd(
            self._dlq_stream(queue),
            {
                "message_id": fields.get("message_id", entry_id),
                "body": fields.get("body", ""),
                "receive_count": str(count),
                "dead_lettered_at": now.isoformat(),
            },
        )
        stream = self._stream(queue)
        await self._redis.xack(stream, GROUP, entry_id)
        await self._redis.xdel(stream, entry_id)
        await self._redis.srem(self._poison_key(queue), entry_id)
        self._notify_dead_letter(
            DeadLetter(
                message_id=fields.get("message_id", entry_id),
                queue=dead_letter_queue(queue),
                body=fields.get("body", ""),
                receive_count=count,
                dead_lettered_at=now,
            )
        )

    async def _owned_entry(self, message: QueueMessage) -> Optional[str]:
        """Stream entry id for a live receipt; None if the receipt is stale.

        A receipt is live while the entry is still pending to this consumer
        with the delivery count it was handed out with. A reclaim by any
        consumer bumps the count; a nack moves the entry to NACKED_CONSUMER.
        """
        entry_id, count = _parse_receipt(message.receipt)
        pending = await self._redis.xpending_range(
            self._stream(message.queue), GROUP, min=entry_id, max=entry_id, count=1
        )
        if not pending:
            return None
        owner = pending[0]
        if owner["consumer"] != self._consumer or int(owner["times_delivered"]) != count:
            return None
        return entry_id

    async def acknowledge(self, message: QueueMessage) -> bool:
        stream = self._stream(message.queue)
        async with self._guard("acknowledge"):
            entry_id = await self._owned_entry(message)
            if entry_id is None:
                return False
            acked = await self._redis.xack(stream, GROUP, entry_id)
            await self._redis.xdel(stream, entry_id)
        return bool(acked)

    async def extend_visibility(self, message: QueueMessage, duration: float) -> bool:
        # Idle resets to zero; the entry becomes reclaimable again one
        # visibility timeout from now.
        async with self._guard("extend_visibility"):
            entry_id = await self._owned_entry(message)
            if entry_id is None:
                return False
            claimed = await self._redis.xclaim(
                self._stream(message.queue), GROUP, self._consumer,
                min_idle_time=0, message_ids=[entry_id], idle=0, justid=True,
            )
        return bool(claimed)

    async def negative_acknowledge(self, message: QueueMessage, retry: bool = True) -> bool:
        async with self._guard("negative_acknowledge"):
            entry_id = await self._owned_entry(message)
            if entry_id is None:
                return False
            if not retry:
                await self._redis.sadd(self._poison_key(message.queue), entry_id)
            claimed = await self._redis.xclaim(
                self._stream(message.queue), GROUP, NACKED_CONSUMER,
                min_idle_time=0, message_ids=[entry_id],
                idle=_NACK_IDLE_MS, justid=True,
            )
        return bool(claimed)

    # ─── Operations ──────────────────────────────────────

    async def dead_letters(self, queue: str, limit: int = 100) -> list[DeadLetter]:
        async with self._guard("dead_letters"):
            entries = await self._redis.xrange(self._dlq_stream(queue), count=limit)
        return [_dead_letter_from_fields(queue, fields) for _, fields in entries]

    async def dead_letter_depth(self, queue: str) -> int:
        async with self._guard("dead_letter_depth"):
            return int(await self._redis.xlen(self._dlq_stream(queue)))

    async def redrive(self, queue: str, message_id: str) -> bool:
        dlq = self._dlq_stream(queue)
        async with self._guard("redrive"):
            for entry_id, fields in await self._redis.xrange(dlq):
                if fields.get("message_id") == message_id:
                    await self._redis.xadd(
                        self._stream(queue),
                        {"message_id": message_id, "body": fields.get("body", "")},
                    )
                    await self._redis.xdel(dlq, entry_id)
                    return True
        return False

    async def depth(self, queue: str) -> int:
        async with self._guard("depth"):
            return int(await self._redis.xlen(self._stream(queue)))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()

    def _guard(self, operation: str) -> "_TransientGuard":
        return _TransientGuard(operation)


class _TransientGuard:
    """Translate redis connection/timeout errors into TransientBrokerError."""

    def __init__(self, operation: str):
        self.operation = operation

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None and issubclass(exc_type, (RedisConnectionError, RedisTimeoutError)):
            raise TransientBrokerError(f"{self.operation}: {exc}") from exc
        return False


def _receipt(entry_id: str, count: int) -> str:
    return f"{entry_id}#{count}"


def _parse_receipt(receipt: str) -> tuple[str, int]:
    entry_id, _, count = receipt.rpartition("#")
    return entry_id, int(count)


def _claimed_entries(response: Any) -> list[tuple[str, dict]]:
    """Normalize XAUTOCLAIM output: [next_id, [(id, fields)...], (deleted)]."""
    if not response or len(response) < 2:
        return []
    return [(entry_id, fields) for entry_id, fields in response[1] if entry_id and fields]


def _read_entries(response: Any) -> list[tuple[str, dict]]:
    """Normalize XREADGROUP output for RESP2 (list) and RESP3 (dict) replies."""
    if not response:
        return []
    if isinstance(response, dict):
        entries: list[tuple[str, dict]] = []
        for value in response.values():
            # RESP3 wraps each stream's entries in one more list
            if value and isinstance(value[0], list):
                value = value[0]
            entries.extend(value)
        return entries
    return [entry for _, entries in response for entry in entries]


def _dead_letter_from_fields(queue: str, fields: dict) -> DeadLetter:
    return DeadLetter(
        message_id=fields.get("message_id", ""),
        queue=dead_letter_queue(queue),
        body=fields.get("body", ""),
        receive_count=int(fields.get("receive_count", 0)),
        dead_lettered_at=datetime.fromisoformat(fields["dead_lettered_at"]),
    )
