"""Deduplication store — remembers which messages already reached a client.

Learn: The broker delivers at least once. A message redelivered after its
notification was already pushed must be acknowledged without pushing
again. The consumer records a DeliveryRecord after a successful dispatch
and checks for it before every dispatch.
"""

from jobrelay.dedup.store import DedupStore, DeliveryRecord, MemoryDedupStore

__all__ = ["DedupStore", "DeliveryRecord", "MemoryDedupStore", "get_dedup_store"]


def get_dedup_store(
    name: str,
    *,
    ttl_seconds: int,
    shards: int = 16,
    redis_url: str = "",
    namespace: str = "",
) -> DedupStore:
    """Build a dedup store backend by name."""
    if name == "memory":
        return MemoryDedupStore(ttl_seconds=ttl_seconds, shards=shards)
    if name == "redis":
        from jobrelay.dedup.redis_store import RedisDedupStore

        return RedisDedupStore.from_url(redis_url, ttl_seconds=ttl_seconds, namespace=namespace)
    raise ValueError(f"Unknown dedup store '{name}'. Available: memory, redis")
