"""Redis-backed dedup store — shared by every relay process.

Learn: One key per message id, written with SET NX EX. NX makes record()
atomic across processes (only the first writer wins) and EX gives us the
retention window for free — Redis expires old records on its own.
"""

import json
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobrelay.dedup.store import DedupStore, DeliveryRecord


class RedisDedupStore(DedupStore):
    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 86400,
        namespace: str = "",
        key_prefix: str = "jobrelay:dedup:",
    ):
        self._redis = client
        self.ttl_seconds = int(ttl_seconds)
        self._prefix = f"{key_prefix}{namespace}:" if namespace else key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisDedupStore":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, message_id: str) -> str:
        return f"{self._prefix}{message_id}"

    async def contains(self, message_id: str) -> bool:
        return bool(await self._redis.exists(self._key(message_id)))

    async def get(self, message_id: str) -> Optional[DeliveryRecord]:
        raw = await self._redis.get(self._key(message_id))
        if raw is None:
            return None
        return DeliveryRecord.from_dict(json.loads(raw))

    async def record(self, record: DeliveryRecord) -> bool:
        stored = await self._redis.set(
            self._key(record.message_id),
            json.dumps(record.to_dict()),
            nx=True,
            ex=self.ttl_seconds,
        )
        return bool(stored)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
