"""Outbox stores — pending publications that must eventually reach the broker."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional


@dataclass(frozen=True)
class OutboxEntry:
    idempotency_key: str
    message_id: str
    topic: str
    body: str
    created_at: datetime
    published_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.published_at is None


class Outbox(ABC):
    """Abstract base for outbox stores."""

    @abstractmethod
    async def add(self, entry: OutboxEntry) -> bool:
        """Insert a pending entry. False if the key already exists."""

    @abstractmethod
    async def get(self, key: str) -> Optional[OutboxEntry]:
        """Fetch an entry by idempotency key."""

    @abstractmethod
    async def discard(self, key: str) -> None:
        """Remove an entry whose status write failed."""

    @abstractmethod
    async def mark_published(self, key: str) -> None:
        """Record a successful broker publish."""

    @abstractmethod
    async def record_failure(self, key: str, error: str) -> None:
        """Count a failed publish attempt."""

    @abstractmethod
    async def pending(self, older_than: timedelta, limit: int = 100) -> list[OutboxEntry]:
        """Pending entries created more than `older_than` ago, oldest first."""


class MemoryOutbox(Outbox):
    def __init__(self):
        self._entries: dict[str, OutboxEntry] = {}
        self._lock = asyncio.Lock()

    async def add(self, entry: OutboxEntry) -> bool:
        async with self._lock:
            if entry.idempotency_key in self._entries:
                return False
            self._entries[entry.idempotency_key] = entry
            return True

    async def get(self, key: str) -> Optional[OutboxEntry]:
        return self._entries.get(key)

    async def discard(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def mark_published(self, key: str) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = replace(
                    entry,
                    published_at=datetime.now(timezone.utc),
                    attempts=entry.attempts + 1,
                    last_error=None,
                )

    async def record_failure(self, key: str, error: str) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = replace(entry, attempts=entry.attempts + 1, last_error=error)

    async def pending(self, older_than: timedelta, limit: int = 100) -> list[OutboxEntry]:
        cutoff = datetime.now(timezone.utc) - older_than
        items = [e for e in self._entries.values() if e.pending and e.created_at <= cutoff]
        items.sort(key=lambda e: e.created_at)
        return items[:limit]
