"""In-memory broker — same contract as the production backend, no server.

Learn: This is what makes redelivery and dead-lettering testable
deterministically. Time comes from an injectable clock, so a test can
"wait out" a visibility timeout by advancing a fake clock instead of
sleeping.

Not durable: everything lives in process memory. Use it for tests, local
development, and single-process demos.
"""

import asyncio
import itertools
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from jobrelay.broker.base import (
    Broker,
    DeadLetter,
    QueueMessage,
    dead_letter_queue,
    new_message_id,
)


@dataclass
class _Entry:
    message_id: str
    body: str
    receive_count: int = 0
    visible_at: float = 0.0
    receipt: Optional[str] = None
    poisoned: bool = False


class MemoryBroker(Broker):
    """Topic fan-out to queues with visibility, receive counts and a DLQ."""

    def __init__(
        self,
        max_receive_count: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(max_receive_count=max_receive_count)
        self._clock = clock
        self._topics: dict[str, set[str]] = defaultdict(set)
        self._queues: dict[str, dict[int, _Entry]] = defaultdict(dict)
        self._dead: dict[str, list[DeadLetter]] = defaultdict(list)
        self._seq = itertools.count(1)
        self._cond = asyncio.Condition()

    @property
    def name(self) -> str:
        return "memory"

    async def bind_queue(self, topic: str, queue: str) -> None:
        self._topics[topic].add(queue)
        self._queues.setdefault(queue, {})

    async def publish_raw(
        self,
        topic: str,
        body: str,
        message_id: Optional[str] = None,
    ) -> str:
        message_id = message_id or new_message_id()
        async with self._cond:
            for queue in self._topics.get(topic, ()):
                self._queues[queue][next(self._seq)] = _Entry(message_id=message_id, body=body)
            self._cond.notify_all()
        return message_id

    async def receive(
        self,
        queue: str,
        max_batch: int,
        visibility_timeout: float,
        wait_seconds: float = 0.0,
    ) -> list[QueueMessage]:
        async with self._cond:
            batch = self._collect(queue, max_batch, visibility_timeout)
            if batch or wait_seconds <= 0:
                return batch
            try:
                await asyncio.wait_for(self._cond.wait(), timeout=wait_seconds)
            except asyncio.TimeoutError:
                pass
            return self._collect(queue, max_batch, visibility_timeout)

    def _collect(self, queue: str, max_batch: int, visibility_timeout: float) -> list[QueueMessage]:
        now = self._clock()
        entries = self._queues[queue]
        batch: list[QueueMessage] = []
        for seq in list(entries):
            if len(batch) >= max_batch:
                break
            entry = entries[seq]
            if entry.visible_at > now:
                continue
            if entry.poisoned or entry.receive_count >= self.max_receive_count:
                del entries[seq]
                self._move_to_dead_letter(queue, entry)
                continue
            entry.receive_count += 1
            entry.receipt = f"{seq}:{uuid.uuid4().hex}"
            entry.visible_at = now + visibility_timeout
            batch.append(
                QueueMessage(
                    message_id=entry.message_id,
                    queue=queue,
                    body=entry.body,
                    receipt=entry.receipt,
                    receive_count=entry.receive_count,
                    visible_until=entry.visible_at,
                )
            )
        return batch

    def _move_to_dead_letter(self, queue: str, entry: _Entry) -> None:
        dead = DeadLetter(
            message_id=entry.message_id,
            queue=dead_letter_queue(queue),
            body=entry.body,
            receive_count=entry.receive_count,
            dead_lettered_at=datetime.now(timezone.utc),
        )
        self._dead[queue].append(dead)
        self._notify_dead_letter(dead)

    def _find(self, message: QueueMessage) -> Optional[tuple[int, _Entry]]:
        """Locate the entry for a delivery; None if the receipt is stale."""
        seq = int(message.receipt.split(":", 1)[0])
        entry = self._queues[message.queue].get(seq)
        if entry is None or entry.receipt != message.receipt:
            return None
        return seq, entry

    async def acknowledge(self, message: QueueMessage) -> bool:
        async with self._cond:
            found = self._find(message)
            if found is None:
                return False
            del self._queues[message.queue][found[0]]
            return True

    async def extend_visibility(self, message: QueueMessage, duration: float) -> bool:
        async with self._cond:
            found = self._find(message)
            if found is None:
                return False
            found[1].visible_at = self._clock() + duration
            return True

    async def negative_acknowledge(self, message: QueueMessage, retry: bool = True) -> bool:
        async with self._cond:
            found = self._find(message)
            if found is None:
                return False
            entry = found[1]
            entry.visible_at = self._clock()
            entry.receipt = None
            if not retry:
                entry.poisoned = True
            self._cond.notify_all()
            return True

    async def dead_letters(self, queue: str, limit: int = 100) -> list[DeadLetter]:
        return list(self._dead[queue][:limit])

    async def dead_letter_depth(self, queue: str) -> int:
        return len(self._dead[queue])

    async def redrive(self, queue: str, message_id: str) -> bool:
        async with self._cond:
            dead = self._dead[queue]
            for i, item in enumerate(dead):
                if item.message_id == message_id:
                    del dead[i]
                    self._queues[queue][next(self._seq)] = _Entry(
                        message_id=item.message_id, body=item.body
                    )
                    self._cond.notify_all()
                    return True
            return False

    async def depth(self, queue: str) -> int:
        return len(self._queues[queue])

    def now(self) -> float:
        return self._clock()
