"""Connection registry — subject → live sessions, safe under concurrency.

Learn: Two indexes, both sharded:

  sessions: session_id → ClientSession      (sharded by session id)
  index:    subject_id → {session_id: ClientSession}  (sharded by subject)

Every mutation holds the session's shard lock *and* the shard locks of all
subjects it touches, acquired in a fixed order (session shards first, then
subject shards by ascending index) so two mutations can never deadlock.
lookup() only takes its subject's shard lock, and because mutations hold
that lock for their whole critical section, a lookup never observes a
half-registered or half-removed session.

The locks are threading locks: no critical section awaits, so they protect
equally well against concurrent tasks and threads.

Stale sessions (no heartbeat within heartbeat_timeout) are removed by
sweep(); RegistrySweeper runs it periodically and closes their handles.
"""

import asyncio
import threading
import time
import zlib
from contextlib import ExitStack
from typing import Callable, Iterable, Optional

import structlog

from jobrelay.errors import NoLiveSessionError, RegistryInvariantViolation
from jobrelay.metrics import LIVE_SESSIONS
from jobrelay.realtime.session import ClientSession, SessionHandle, SessionState

logger = structlog.get_logger()


class _Shard:
    __slots__ = ("lock", "items")

    def __init__(self):
        self.lock = threading.Lock()
        self.items: dict = {}


class ConnectionRegistry:
    """Concurrency-safe index of live client sessions."""

    def __init__(
        self,
        shards: int = 16,
        heartbeat_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._session_shards = [_Shard() for _ in range(shards)]
        self._subject_shards = [_Shard() for _ in range(shards)]
        self._count_lock = threading.Lock()
        self._live = 0

    # ─── Shard helpers ───────────────────────────────────

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._subject_shards)

    def _locked(self, stack: ExitStack, session_id: str, subjects: Iterable[str]) -> None:
        """Acquire the session shard, then subject shards in ascending order."""
        stack.enter_context(self._session_shards[self._index(session_id)].lock)
        for i in sorted({self._index(s) for s in subjects}):
            stack.enter_context(self._subject_shards[i].lock)

    def _sessions_of(self, session_id: str) -> dict[str, ClientSession]:
        return self._session_shards[self._index(session_id)].items

    def _subject_map(self, subject_id: str) -> dict[str, dict[str, ClientSession]]:
        return self._subject_shards[self._index(subject_id)].items

    def _adjust_live(self, delta: int) -> None:
        with self._count_lock:
            self._live += delta
            LIVE_SESSIONS.set(self._live)

    # ─── Mutations ───────────────────────────────────────

    def register(self, subject_id: str, session_id: str, handle: SessionHandle) -> ClientSession:
        """Register an authenticated session and make it ACTIVE.

        Raises ValueError if the session id is already registered; session
        ids are never reused.
        """
        now = self._clock()
        session = ClientSession(
            session_id=session_id,
            subject_id=subject_id,
            handle=handle,
            connected_at=now,
            last_seen=now,
            state=SessionState.AUTHENTICATED,
            subjects={subject_id},
        )
        with ExitStack() as stack:
            self._locked(stack, session_id, [subject_id])
            sessions = self._sessions_of(session_id)
            if session_id in sessions:
                raise ValueError(f"Session {session_id} already registered")
            sessions[session_id] = session
            self._subject_map(subject_id).setdefault(subject_id, {})[session_id] = session
            session.transition(SessionState.ACTIVE)
        self._adjust_live(1)
        logger.info("registry.registered", session_id=session_id, subject_id=subject_id)
        return session

    def subscribe(self, session_id: str, subject_id: str) -> bool:
        """Route a further subject's events to an existing session."""
        with ExitStack() as stack:
            self._locked(stack, session_id, [subject_id])
            session = self._sessions_of(session_id).get(session_id)
            if session is None or not session.is_live:
                return False
            session.subjects.add(subject_id)
            self._subject_map(subject_id).setdefault(subject_id, {})[session_id] = session
        return True

    def unsubscribe(self, session_id: str, subject_id: str) -> bool:
        """Stop routing a subject to a session. The primary subject stays."""
        with ExitStack() as stack:
            self._locked(stack, session_id, [subject_id])
            session = self._sessions_of(session_id).get(session_id)
            if session is None or subject_id == session.subject_id:
                return False
            if subject_id not in session.subjects:
                return False
            session.subjects.discard(subject_id)
            self._remove_from_index(subject_id, session_id)
        return True

    def deregister(self, session_id: str) -> Optional[ClientSession]:
        """Remove a session and all its index entries atomically.

        Idempotent: returns None if the session is already gone. The
        session moves to CLOSED; closing the connection is the caller's job.
        """
        while True:
            # Subjects only change under the session shard lock: read them,
            # then retake that lock together with every subject shard. A
            # concurrent subscribe in between means we read a stale set; retry.
            with self._session_shards[self._index(session_id)].lock:
                session = self._sessions_of(session_id).get(session_id)
                if session is None:
                    return None
                subjects = set(session.subjects)

            with ExitStack() as stack:
                self._locked(stack, session_id, subjects)
                session = self._sessions_of(session_id).get(session_id)
                if session is None:
                    return None
                if session.subjects != subjects:
                    continue
                del self._sessions_of(session_id)[session_id]
                for subject_id in subjects:
                    self._remove_from_index(subject_id, session_id)
                session.transition(SessionState.CLOSED)
                break

        self._adjust_live(-1)
        logger.info("registry.deregistered", session_id=session_id, subject_id=session.subject_id)
        return session

    def _remove_from_index(self, subject_id: str, session_id: str) -> None:
        subject_map = self._subject_map(subject_id)
        entries = subject_map.get(subject_id)
        if entries is None or session_id not in entries:
            raise RegistryInvariantViolation(
                f"Session {session_id} missing from index for subject {subject_id}"
            )
        del entries[session_id]
        if not entries:
            del subject_map[subject_id]

    def touch(self, session_id: str) -> bool:
        """Record a heartbeat. Returns False for unknown sessions."""
        with self._session_shards[self._index(session_id)].lock:
            session = self._sessions_of(session_id).get(session_id)
            if session is None or not session.is_live:
                return False
            session.last_seen = self._clock()
            session.transition(SessionState.ACTIVE)
            return True

    # ─── Queries ─────────────────────────────────────────

    def lookup(self, subject_id: str) -> list[ClientSession]:
        """Snapshot of live sessions for a subject, oldest connection first."""
        shard = self._subject_shards[self._index(subject_id)]
        with shard.lock:
            entries = shard.items.get(subject_id)
            if not entries:
                return []
            sessions = [s for s in entries.values() if s.is_live]
        return sorted(sessions, key=lambda s: s.connected_at)

    def require(self, subject_id: str) -> list[ClientSession]:
        """Like lookup(), but raises NoLiveSessionError when empty."""
        sessions = self.lookup(subject_id)
        if not sessions:
            raise NoLiveSessionError(subject_id)
        return sessions

    def get(self, session_id: str) -> Optional[ClientSession]:
        with self._session_shards[self._index(session_id)].lock:
            return self._sessions_of(session_id).get(session_id)

    def sessions(self) -> list[ClientSession]:
        result: list[ClientSession] = []
        for shard in self._session_shards:
            with shard.lock:
                result.extend(shard.items.values())
        return sorted(result, key=lambda s: s.connected_at)

    def subject_count(self) -> int:
        total = 0
        for shard in self._subject_shards:
            with shard.lock:
                total += len(shard.items)
        return total

    def __len__(self) -> int:
        with self._count_lock:
            return self._live

    def check_invariants(self) -> None:
        """Verify both indexes agree. Raises RegistryInvariantViolation."""
        with ExitStack() as stack:
            for shard in self._session_shards + self._subject_shards:
                stack.enter_context(shard.lock)
            by_id = {sid: s for shard in self._session_shards for sid, s in shard.items.items()}
            indexed: set[tuple[str, str]] = set()
            for shard in self._subject_shards:
                for subject_id, entries in shard.items.items():
                    if not entries:
                        raise RegistryInvariantViolation(f"Empty index entry for {subject_id}")
                    for session_id, session in entries.items():
                        if by_id.get(session_id) is not session:
                            raise RegistryInvariantViolation(
                                f"Index entry {subject_id}/{session_id} has no live session"
                            )
                        indexed.add((subject_id, session_id))
            expected = {(subj, sid) for sid, s in by_id.items() for subj in s.subjects}
            if indexed != expected:
                raise RegistryInvariantViolation("Session table and subject index disagree")

    # ─── Housekeeping ────────────────────────────────────

    def sweep(self, now: Optional[float] = None) -> list[ClientSession]:
        """Deregister sessions with no heartbeat inside heartbeat_timeout."""
        cutoff = (self._clock() if now is None else now) - self.heartbeat_timeout
        stale = [s.session_id for s in self.sessions() if s.last_seen < cutoff]
        removed = []
        for session_id in stale:
            session = self.deregister(session_id)
            if session is not None:
                removed.append(session)
        if removed:
            logger.info("registry.swept", count=len(removed))
        return removed

    async def drain(self, code: int = 1001, reason: str = "server shutdown") -> int:
        """Deregister and close every session (shutdown)."""
        closed = 0
        for session in self.sessions():
            if self.deregister(session.session_id) is not None:
                await _close_quietly(session, code, reason)
                closed += 1
        logger.info("registry.drained", count=closed)
        return closed


async def _close_quietly(session: ClientSession, code: int, reason: str) -> None:
    try:
        await session.handle.close(code=code, reason=reason)
    except Exception:
        logger.exception("registry.close_failed", session_id=session.session_id)


class RegistrySweeper:
    """Background task that evicts stale sessions and expired buffer entries.

    Usage:
        sweeper = RegistrySweeper(registry, buffer, interval=15)
        task = asyncio.create_task(sweeper.run_loop())
    """

    def __init__(self, registry: ConnectionRegistry, buffer=None, interval: float = 15.0, dedup=None):
        self.registry = registry
        self.buffer = buffer
        self.dedup = dedup
        self.interval = interval
        self._running = False

    async def sweep_once(self) -> int:
        stale = self.registry.sweep()
        for session in stale:
            await _close_quietly(session, 4408, "heartbeat timeout")
        if self.buffer is not None:
            self.buffer.purge_expired()
        if self.dedup is not None:
            await self.dedup.purge_expired()
        return len(stale)

    async def run_loop(self) -> None:
        self._running = True
        logger.info("sweeper.started", interval=self.interval)
        while self._running:
            try:
                await self.sweep_once()
            except RegistryInvariantViolation:
                raise
            except Exception:
                logger.exception("sweeper.error")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False
        logger.info("sweeper.stopping")
