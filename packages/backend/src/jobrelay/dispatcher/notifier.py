"""Notification dispatcher — completion event → every live session.

Learn: dispatch() resolves the event's subject to live sessions and pushes
the notification payload to all of them concurrently:

- One failed push never fails its siblings; each is tracked separately
- At least one successful push → success
- No live session → the event goes to the offline buffer (success)
- Sessions existed but every push failed → failure; the consumer nacks
  and the broker redelivers. Failed sessions are evicted from the
  registry, so the redelivery finds the subject offline and buffers.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from jobrelay.errors import DispatchFailed, NoLiveSessionError, SessionPushError
from jobrelay.metrics import RelayStats
from jobrelay.realtime.buffer import OfflineBuffer
from jobrelay.realtime.registry import ConnectionRegistry
from jobrelay.realtime.session import ClientSession
from jobrelay.schemas.event import CompletionEvent

logger = structlog.get_logger()


@dataclass
class DeliveryOutcome:
    """Result of dispatching one event."""

    job_id: str
    subject_id: str
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    buffered: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.delivered) or self.buffered

    @property
    def target_session_ids(self) -> tuple[str, ...]:
        return tuple(self.delivered)

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise DispatchFailed(
                f"Job {self.job_id}: no session delivered and nothing buffered "
                f"({len(self.failed)} push failures)"
            )


def format_notification(event: CompletionEvent) -> dict[str, Any]:
    """Wire payload pushed to clients (stable schema)."""
    return event.to_notification().to_wire()


class NotificationDispatcher:
    """Pushes completion events to live sessions via the registry."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        buffer: Optional[OfflineBuffer] = None,
        stats: Optional[RelayStats] = None,
        push_timeout: float = 5.0,
    ):
        self.registry = registry
        self.buffer = buffer
        self.stats = stats or RelayStats()
        self.push_timeout = push_timeout

    async def dispatch(self, event: CompletionEvent) -> DeliveryOutcome:
        outcome = DeliveryOutcome(job_id=event.job_id, subject_id=event.subject_id)
        log = logger.bind(job_id=event.job_id, subject_id=event.subject_id)

        try:
            sessions = self.registry.require(event.subject_id)
        except NoLiveSessionError:
            if self.buffer is not None:
                outcome.buffered = self.buffer.put(event)
                self.stats.incr("buffered")
                log.info("dispatch.buffered")
                await self._hand_over_buffered(event.subject_id)
            else:
                log.info("dispatch.no_live_session")
            return outcome

        notification = format_notification(event)
        results = await asyncio.gather(
            *(self._push(session, notification) for session in sessions),
            return_exceptions=True,
        )

        for session, result in zip(sessions, results):
            if isinstance(result, SessionPushError):
                outcome.failed[session.session_id] = result.reason
                await self._evict(session, result)
            elif isinstance(result, BaseException):
                # Cancellation of this dispatch
                raise result
            else:
                outcome.delivered.append(session.session_id)

        if outcome.delivered:
            self.stats.incr("dispatched")
        log.info(
            "dispatch.completed",
            delivered=len(outcome.delivered),
            failed=len(outcome.failed),
        )
        return outcome

    async def _hand_over_buffered(self, subject_id: str) -> None:
        """Offer a just-buffered subject to sessions that registered meanwhile.

        A session registering between the liveness check and buffer.put()
        has already drained an empty buffer; without this the event would
        wait for the next reconnect.
        """
        for session in self.registry.lookup(subject_id):
            await self.offer_buffered(session, subject_id)
            if not self.buffer.peek(subject_id):
                return

    async def _push(self, session: ClientSession, notification: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(session.handle.send_json(notification), timeout=self.push_timeout)
        except SessionPushError:
            raise
        except asyncio.TimeoutError as e:
            raise SessionPushError(session.session_id, "push timed out", e) from e
        except Exception as e:
            # Whatever the transport raised, it belongs to this session only
            logger.exception("dispatch.push_error", session_id=session.session_id)
            raise SessionPushError(session.session_id, type(e).__name__, e) from e

    async def _evict(self, session: ClientSession, error: SessionPushError) -> None:
        self.stats.incr("push_failures")
        logger.warning(
            "dispatch.push_failed",
            session_id=session.session_id,
            subject_id=session.subject_id,
            error=error.reason,
        )
        if self.registry.deregister(session.session_id) is not None:
            try:
                await session.handle.close(code=1011, reason="write failed")
            except Exception:
                logger.exception("dispatch.close_failed", session_id=session.session_id)

    async def offer_buffered(self, session: ClientSession, subject_id: Optional[str] = None) -> int:
        """Replay buffered events for a (re)connecting session, oldest first.

        Stops at the first failed push and puts the rest back. An event that
        cannot be rendered as a notification is logged and dropped; the
        events after it are still replayed.
        """
        if self.buffer is None:
            return 0
        subject_id = subject_id or session.subject_id
        items = self.buffer.take(subject_id)
        sent = dropped = 0
        for i, item in enumerate(items):
            try:
                notification = format_notification(item.event)
            except ValidationError:
                dropped += 1
                logger.exception(
                    "dispatch.buffered_unrenderable",
                    subject_id=subject_id,
                    job_id=item.event.job_id,
                )
                continue
            try:
                await self._push(session, notification)
            except SessionPushError as e:
                self.buffer.restore(subject_id, items[i:])
                await self._evict(session, e)
                break
            except asyncio.CancelledError:
                self.buffer.restore(subject_id, items[i:])
                raise
            sent += 1
        if items:
            logger.info(
                "dispatch.buffer_replayed",
                session_id=session.session_id,
                subject_id=subject_id,
                sent=sent,
                dropped=dropped,
                pending=len(items) - sent - dropped,
            )
        return sent
