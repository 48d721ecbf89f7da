"""Client session model and the handles used to write to a connection.

Session lifecycle:

  CONNECTING → AUTHENTICATED → ACTIVE → CLOSED
                                 ↺ heartbeat

Any state may move to CLOSED (error, explicit close, heartbeat timeout).
CLOSED is terminal: a reconnect creates a new ClientSession with a new
session id — an old session is never resurrected.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from jobrelay.errors import SessionPushError


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.AUTHENTICATED, SessionState.CLOSED},
    SessionState.AUTHENTICATED: {SessionState.ACTIVE, SessionState.CLOSED},
    SessionState.ACTIVE: {SessionState.ACTIVE, SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class SessionHandle(Protocol):
    """What the registry and dispatcher need from a connection."""

    async def send_json(self, data: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass(eq=False)
class ClientSession:
    """One live, authenticated connection for a subject.

    Learn: Owned by the ConnectionRegistry. `subjects` is every subject the
    session receives events for — the authenticated subject plus any extra
    subscriptions. eq=False keeps identity semantics so sessions can live
    in sets.
    """

    session_id: str
    subject_id: str
    handle: SessionHandle
    connected_at: float
    last_seen: float
    state: SessionState = SessionState.CONNECTING
    subjects: set[str] = field(default_factory=set)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid session transition {self.state.value} → {new_state.value}")
        self.state = new_state

    @property
    def is_live(self) -> bool:
        return self.state is SessionState.ACTIVE


class WebSocketHandle:
    """SessionHandle over a Starlette/FastAPI websocket.

    Learn: Both the gateway (pong replies) and dispatcher workers (pushes)
    write to the same socket, so writes are serialized with a lock and
    bounded by a timeout. Any failure surfaces as SessionPushError.
    """

    def __init__(self, websocket: WebSocket, session_id: str, push_timeout: float = 5.0):
        self.websocket = websocket
        self.session_id = session_id
        self.push_timeout = push_timeout
        self._lock = asyncio.Lock()
        self._closed = False

    async def send_json(self, data: dict[str, Any]) -> None:
        if self._closed:
            raise SessionPushError(self.session_id, "connection closed")
        text = json.dumps(data, separators=(",", ":"))
        try:
            async with self._lock:
                await asyncio.wait_for(self.websocket.send_text(text), timeout=self.push_timeout)
        except asyncio.TimeoutError as e:
            raise SessionPushError(self.session_id, "write timed out", e) from e
        except WebSocketDisconnect as e:
            # Starlette turns a transport OSError into a disconnect
            self._closed = True
            raise SessionPushError(self.session_id, f"peer disconnected ({e.code})", e) from e
        except (RuntimeError, OSError) as e:
            # Starlette raises RuntimeError when writing to a closed socket
            raise SessionPushError(self.session_id, str(e) or type(e).__name__, e) from e

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError):
            pass


def describe(session: ClientSession, now: Optional[float] = None) -> dict[str, Any]:
    """Serializable view of a session for logs and admin routes."""
    data = {
        "session_id": session.session_id,
        "subject_id": session.subject_id,
        "subjects": sorted(session.subjects),
        "state": session.state.value,
    }
    if now is not None:
        data["idle_seconds"] = round(now - session.last_seen, 3)
    return data
