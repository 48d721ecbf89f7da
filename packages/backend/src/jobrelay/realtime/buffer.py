"""Offline buffer — short-lived catch-up for subjects with no live session.

Learn: This is a best-effort convenience, NOT a durability layer. The
broker and its dead-letter path are durable; the authoritative job status
lives in the external status store and can always be re-queried. So:

- Each subject keeps at most max_per_subject events (oldest evicted first)
- Each event lives for ttl seconds; expired events are dropped with a log
  entry and never retried
- A session registering for the subject takes the buffered events, oldest
  first
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from jobrelay.metrics import RelayStats
from jobrelay.schemas.event import CompletionEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class BufferedEvent:
    event: CompletionEvent
    buffered_at: float
    expires_at: float


class OfflineBuffer:
    """Bounded, subject-keyed buffer with a time-to-live."""

    def __init__(
        self,
        ttl: float = 300.0,
        max_per_subject: int = 50,
        clock: Callable[[], float] = time.monotonic,
        stats: Optional[RelayStats] = None,
    ):
        if max_per_subject < 1:
            raise ValueError("max_per_subject must be >= 1")
        self.ttl = ttl
        self.max_per_subject = max_per_subject
        self._clock = clock
        self._stats = stats
        self._lock = threading.Lock()
        self._items: dict[str, deque[BufferedEvent]] = {}

    def put(self, event: CompletionEvent) -> bool:
        """Buffer an event. Returns True; evicts the subject's oldest if full."""
        now = self._clock()
        item = BufferedEvent(event=event, buffered_at=now, expires_at=now + self.ttl)
        with self._lock:
            queue = self._items.setdefault(event.subject_id, deque())
            self._drop_expired(event.subject_id, queue, now)
            if len(queue) >= self.max_per_subject:
                evicted = queue.popleft()
                logger.warning(
                    "buffer.evicted",
                    subject_id=event.subject_id,
                    job_id=evicted.event.job_id,
                )
            queue.append(item)
        logger.info("buffer.stored", subject_id=event.subject_id, job_id=event.job_id)
        return True

    def take(self, subject_id: str) -> list[BufferedEvent]:
        """Remove and return a subject's unexpired events, oldest first."""
        now = self._clock()
        with self._lock:
            queue = self._items.pop(subject_id, None)
            if not queue:
                return []
            self._drop_expired(subject_id, queue, now)
            return list(queue)

    def restore(self, subject_id: str, items: list[BufferedEvent]) -> None:
        """Put undelivered items back at the front with their original expiry."""
        if not items:
            return
        with self._lock:
            queue = self._items.setdefault(subject_id, deque())
            for item in reversed(items):
                queue.appendleft(item)
            while len(queue) > self.max_per_subject:
                queue.popleft()

    def peek(self, subject_id: str) -> list[CompletionEvent]:
        with self._lock:
            return [item.event for item in self._items.get(subject_id, ())]

    def purge_expired(self) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for subject_id in list(self._items):
                queue = self._items[subject_id]
                removed += self._drop_expired(subject_id, queue, now)
                if not queue:
                    del self._items[subject_id]
        return removed

    def _drop_expired(self, subject_id: str, queue: deque, now: float) -> int:
        dropped = 0
        while queue and queue[0].expires_at <= now:
            item = queue.popleft()
            dropped += 1
            logger.info(
                "buffer.expired",
                subject_id=subject_id,
                job_id=item.event.job_id,
                age_seconds=round(now - item.buffered_at, 3),
            )
        if dropped and self._stats is not None:
            self._stats.incr("buffer_expired", dropped)
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._items.values())
