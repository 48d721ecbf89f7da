"""Prometheus metrics and in-process delivery statistics.

Learn: Two views of the same numbers:
1. Prometheus counters on a dedicated CollectorRegistry, scraped via /metrics
2. RelayStats — a plain dataclass the /api/v1/stats route and tests read
   without depending on global Prometheus state

RelayStats.incr() updates both, so call sites never touch prometheus_client.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge

REGISTRY = CollectorRegistry()

MESSAGES_RECEIVED = Counter(
    "jobrelay_messages_received_total",
    "Queue messages received by the consumer pool",
    registry=REGISTRY,
)
MESSAGES_DEDUPLICATED = Counter(
    "jobrelay_messages_deduplicated_total",
    "Redelivered messages acknowledged without re-dispatch",
    registry=REGISTRY,
)
MESSAGES_DISPATCHED = Counter(
    "jobrelay_messages_dispatched_total",
    "Messages delivered to at least one live session",
    registry=REGISTRY,
)
MESSAGES_BUFFERED = Counter(
    "jobrelay_messages_buffered_total",
    "Messages parked in the offline buffer (no live session)",
    registry=REGISTRY,
)
MESSAGES_DEAD_LETTERED = Counter(
    "jobrelay_messages_dead_lettered_total",
    "Messages moved to the dead-letter path by the broker",
    registry=REGISTRY,
)
MESSAGES_NACKED = Counter(
    "jobrelay_messages_nacked_total",
    "Messages negatively acknowledged, by reason",
    ["reason"],
    registry=REGISTRY,
)
MESSAGES_LEASE_EXPIRED = Counter(
    "jobrelay_messages_lease_expired_total",
    "Prefetched messages skipped because their visibility ran out",
    registry=REGISTRY,
)
MESSAGES_MALFORMED = Counter(
    "jobrelay_messages_malformed_total",
    "Messages whose body could not be parsed",
    registry=REGISTRY,
)
BUFFER_EXPIRED = Counter(
    "jobrelay_buffer_expired_total",
    "Buffered notifications dropped after their TTL",
    registry=REGISTRY,
)
SESSION_PUSH_FAILURES = Counter(
    "jobrelay_session_push_failures_total",
    "Failed writes to individual sessions",
    registry=REGISTRY,
)
BROKER_ERRORS = Counter(
    "jobrelay_broker_errors_total",
    "Transient broker errors by operation",
    ["operation"],
    registry=REGISTRY,
)
LIVE_SESSIONS = Gauge(
    "jobrelay_live_sessions",
    "Sessions currently registered",
    registry=REGISTRY,
)

_COUNTERS = {
    "received": MESSAGES_RECEIVED,
    "deduplicated": MESSAGES_DEDUPLICATED,
    "dispatched": MESSAGES_DISPATCHED,
    "buffered": MESSAGES_BUFFERED,
    "dead_lettered": MESSAGES_DEAD_LETTERED,
    "malformed": MESSAGES_MALFORMED,
    "lease_expired": MESSAGES_LEASE_EXPIRED,
    "buffer_expired": BUFFER_EXPIRED,
    "push_failures": SESSION_PUSH_FAILURES,
}


@dataclass
class RelayStats:
    """Runtime statistics for monitoring."""

    received: int = 0
    deduplicated: int = 0
    dispatched: int = 0
    buffered: int = 0
    dead_lettered: int = 0
    nacked: int = 0
    malformed: int = 0
    lease_expired: int = 0
    buffer_expired: int = 0
    push_failures: int = 0
    broker_errors: int = 0
    started_at: Optional[datetime] = field(default=None)

    def incr(self, name: str, amount: int = 1) -> None:
        setattr(self, name, getattr(self, name) + amount)
        counter = _COUNTERS.get(name)
        if counter is not None:
            counter.inc(amount)

    def nack(self, reason: str) -> None:
        self.nacked += 1
        MESSAGES_NACKED.labels(reason=reason).inc()

    def broker_error(self, operation: str) -> None:
        self.broker_errors += 1
        BROKER_ERRORS.labels(operation=operation).inc()

    def mark_started(self) -> None:
        self.started_at = datetime.now(timezone.utc)

    def snapshot(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data
