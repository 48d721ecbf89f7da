"""Publisher side — status write then broker publish, made recoverable.

Learn: The generation pipeline updates the job's status, then publishes a
completion event. A crash between the two would silently drop the
notification, so publication goes through an outbox:

  1. outbox.add(entry)          idempotency key = jobId + updatedAt
  2. status_store.update_status(...)
  3. broker.publish(...)  →  outbox.mark_published(key)

Anything left pending is re-published by OutboxReconciler. Re-publishing
reuses a message id derived from the idempotency key, so if the first
publish did land, the consumer's dedup store swallows the second copy.
"""

from jobrelay.publisher.outbox import MemoryOutbox, Outbox, OutboxEntry
from jobrelay.publisher.service import (
    CompletionPublisher,
    NullStatusStore,
    OutboxReconciler,
    StatusStore,
    message_id_for,
)

__all__ = [
    "CompletionPublisher",
    "MemoryOutbox",
    "NullStatusStore",
    "Outbox",
    "OutboxEntry",
    "OutboxReconciler",
    "StatusStore",
    "message_id_for",
]
