"""Deduplication store interface and the sharded in-memory backend."""

import threading
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional


@dataclass(frozen=True)
class DeliveryRecord:
    """Proof that a message produced its user-visible effect.

    A message_id present in the store is never pushed to a client again,
    even if the broker redelivers the underlying message.
    """

    message_id: str
    delivered_at: datetime
    target_session_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "delivered_at": self.delivered_at.isoformat(),
            "target_session_ids": list(self.target_session_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryRecord":
        return cls(
            message_id=data["message_id"],
            delivered_at=datetime.fromisoformat(data["delivered_at"]),
            target_session_ids=tuple(data.get("target_session_ids", ())),
        )


class DedupStore(ABC):
    """Abstract base for dedup store backends."""

    @abstractmethod
    async def contains(self, message_id: str) -> bool:
        """True if the message already has a live DeliveryRecord."""

    @abstractmethod
    async def record(self, record: DeliveryRecord) -> bool:
        """Store a record. Returns False if one already existed."""

    @abstractmethod
    async def get(self, message_id: str) -> Optional[DeliveryRecord]:
        """Fetch the record for a message, if any."""

    async def purge_expired(self) -> int:
        """Drop records past their retention window. Returns count removed."""
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class _Shard:
    __slots__ = ("lock", "records")

    def __init__(self):
        self.lock = threading.Lock()
        self.records: dict[str, tuple[DeliveryRecord, float]] = {}


class MemoryDedupStore(DedupStore):
    """Sharded, TTL-bounded dedup store held in process memory.

    Learn: Keys are spread over independent shards, each with its own lock,
    so workers recording different messages rarely contend. Expired records
    are removed lazily on access and in bulk by purge_expired().
    """

    def __init__(
        self,
        ttl_seconds: float = 86400,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, message_id: str) -> _Shard:
        return self._shards[zlib.crc32(message_id.encode()) % len(self._shards)]

    def _live(self, shard: _Shard, message_id: str) -> Optional[DeliveryRecord]:
        item = shard.records.get(message_id)
        if item is None:
            return None
        record, expires_at = item
        if expires_at <= self._clock():
            del shard.records[message_id]
            return None
        return record

    async def contains(self, message_id: str) -> bool:
        shard = self._shard(message_id)
        with shard.lock:
            return self._live(shard, message_id) is not None

    async def get(self, message_id: str) -> Optional[DeliveryRecord]:
        shard = self._shard(message_id)
        with shard.lock:
            return self._live(shard, message_id)

    async def record(self, record: DeliveryRecord) -> bool:
        shard = self._shard(record.message_id)
        with shard.lock:
            if self._live(shard, record.message_id) is not None:
                return False
            shard.records[record.message_id] = (record, self._clock() + self.ttl_seconds)
            return True

    async def purge_expired(self) -> int:
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [k for k, (_, exp) in shard.records.items() if exp <= now]
                for key in expired:
                    del shard.records[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.records)
        return total
