"""Broker base — narrow interface to the durable message broker.

Learn: JobRelay does not implement a broker. It consumes one through six
operations (publish / receive / acknowledge / extend_visibility /
negative_acknowledge, plus dead-letter inspection for operators) and relies
on the broker's contract:

1. A received message is invisible to other receivers until its visibility
   deadline passes or it is acknowledged
2. Each receive increments the message's receive count
3. Once the receive count exceeds max_receive_count, the broker moves the
   message to the queue's dead-letter path instead of delivering it again

The core never counts redeliveries itself — it only reports success (ack)
or failure (nack) per attempt.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from jobrelay.schemas.event import CompletionEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class QueueMessage:
    """One delivery of a message, owned by a consumer until ack/nack/expiry.

    Learn: `body` is kept as the raw serialized event — deserializing is the
    consumer's job, because a malformed body must still be ackable/nackable.
    `receipt` is the opaque acknowledgement token for *this* delivery; a
    receipt from an earlier delivery of the same message is stale.
    """

    message_id: str
    queue: str
    body: str
    receipt: str
    receive_count: int
    visible_until: float


@dataclass(frozen=True)
class DeadLetter:
    """A message parked in a queue's dead-letter path."""

    message_id: str
    queue: str
    body: str
    receive_count: int
    dead_lettered_at: datetime


DeadLetterListener = Callable[[DeadLetter], None]


def dead_letter_queue(queue: str) -> str:
    """Name of the dead-letter path for a queue."""
    return f"{queue}.dlq"


def new_message_id() -> str:
    return str(uuid.uuid4())


class Broker(ABC):
    """Abstract base for broker backends."""

    def __init__(self, max_receive_count: int = 3):
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be >= 1")
        self.max_receive_count = max_receive_count
        self._dead_letter_listeners: list[DeadLetterListener] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier, e.g. 'memory', 'redis'."""

    # ─── Topology ────────────────────────────────────────

    @abstractmethod
    async def bind_queue(self, topic: str, queue: str) -> None:
        """Subscribe a durable queue to a topic (idempotent)."""

    # ─── Producer side ───────────────────────────────────

    async def publish(
        self,
        topic: str,
        event: CompletionEvent,
        message_id: Optional[str] = None,
    ) -> str:
        """Publish an event to every queue bound to the topic.

        Returns the broker message id. Passing a message_id lets a publisher
        that retries the same logical publish produce the same id, which the
        consumer's deduplication store then recognizes.
        """
        return await self.publish_raw(topic, event.to_wire(), message_id=message_id)

    @abstractmethod
    async def publish_raw(
        self,
        topic: str,
        body: str,
        message_id: Optional[str] = None,
    ) -> str:
        """Publish an already-serialized body."""

    # ─── Consumer side ───────────────────────────────────

    @abstractmethod
    async def receive(
        self,
        queue: str,
        max_batch: int,
        visibility_timeout: float,
        wait_seconds: float = 0.0,
    ) -> list[QueueMessage]:
        """Receive up to max_batch visible messages.

        Waits up to wait_seconds for at least one message (long polling).
        Messages past max_receive_count are dead-lettered, not returned.
        """

    @abstractmethod
    async def acknowledge(self, message: QueueMessage) -> bool:
        """Delete the message. Returns False if the receipt is stale."""

    @abstractmethod
    async def extend_visibility(self, message: QueueMessage, duration: float) -> bool:
        """Keep the message invisible for another `duration` seconds."""

    @abstractmethod
    async def negative_acknowledge(self, message: QueueMessage, retry: bool = True) -> bool:
        """Return the message to the queue for immediate redelivery.

        With retry=False the message is marked poisoned: the next receive
        moves it straight to the dead-letter path regardless of its count.
        """

    # ─── Operations ──────────────────────────────────────

    @abstractmethod
    async def dead_letters(self, queue: str, limit: int = 100) -> list[DeadLetter]:
        """List messages in the queue's dead-letter path, oldest first."""

    @abstractmethod
    async def redrive(self, queue: str, message_id: str) -> bool:
        """Move a dead-lettered message back to the queue with a fresh count."""

    @abstractmethod
    async def depth(self, queue: str) -> int:
        """Messages in the queue, visible or in flight."""

    async def dead_letter_depth(self, queue: str) -> int:
        return len(await self.dead_letters(queue, limit=10_000))

    def now(self) -> float:
        """Current time on the clock QueueMessage.visible_until is measured by."""
        return time.time()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # ─── Dead-letter notifications ───────────────────────

    def add_dead_letter_listener(self, listener: DeadLetterListener) -> None:
        self._dead_letter_listeners.append(listener)

    def _notify_dead_letter(self, dead: DeadLetter) -> None:
        logger.warning(
            "broker.dead_lettered",
            message_id=dead.message_id,
            queue=dead.queue,
            receive_count=dead.receive_count,
        )
        for listener in self._dead_letter_listeners:
            try:
                listener(dead)
            except Exception:
                logger.exception("broker.dead_letter_listener_error")
