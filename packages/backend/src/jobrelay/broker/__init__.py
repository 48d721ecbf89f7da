"""Broker backends — pluggable durable message transport.

Learn: The pipeline only sees the Broker interface. Two backends ship:
    memory — in-process, deterministic, used by tests and local dev
    redis  — Redis Streams consumer groups, durable across restarts

    broker = get_broker("redis", redis_url=..., max_receive_count=3)
"""

from jobrelay.broker.base import (
    Broker,
    DeadLetter,
    QueueMessage,
    dead_letter_queue,
)
from jobrelay.broker.memory import MemoryBroker

__all__ = [
    "Broker",
    "DeadLetter",
    "MemoryBroker",
    "QueueMessage",
    "dead_letter_queue",
    "get_broker",
    "list_brokers",
]


def get_broker(name: str, *, redis_url: str = "", max_receive_count: int = 3) -> Broker:
    """Build a broker backend by name.

    Raises ValueError if the backend is unknown.
    """
    if name == "memory":
        return MemoryBroker(max_receive_count=max_receive_count)
    if name == "redis":
        from jobrelay.broker.redis_streams import RedisStreamsBroker

        return RedisStreamsBroker.from_url(redis_url, max_receive_count=max_receive_count)
    available = ", ".join(list_brokers())
    raise ValueError(f"Unknown broker '{name}'. Available: {available}")


def list_brokers() -> list[str]:
    return ["memory", "redis"]
