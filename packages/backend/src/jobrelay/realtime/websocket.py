"""Session gateway — the websocket endpoint clients connect to.

Learn: Each client connects to /ws?token=JWT. The gateway:
1. Authenticates the credential (delegated to an Authenticator)
2. Registers the session with the ConnectionRegistry (→ ACTIVE)
3. Replays any buffered notifications for the subject, oldest first
4. Runs the read loop: heartbeats, subscribe / unsubscribe control frames
5. On disconnect, write failure or heartbeat timeout: deregisters and
   closes (→ CLOSED, terminal)

The gateway owns exactly its own connection's read loop. Pushes arrive
from consumer workers through the registry, never through another
session's gateway.

Frames (JSON text):
  client → server  {"type": "ping"}
                   {"type": "subscribe", "subjectId": "..."}
                   {"type": "unsubscribe", "subjectId": "..."}
  server → client  {"type": "connected", "sessionId": "...", "subjectId": "..."}
                   {"type": "pong"} / {"type": "subscribed", ...} / {"type": "error", ...}
                   notification payloads (no "type" key; see schemas/event.py)
"""

import asyncio
import json
from typing import Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jobrelay.auth.jwt import Authenticator, Principal
from jobrelay.dispatcher.notifier import NotificationDispatcher
from jobrelay.errors import AuthenticationError, SessionPushError
from jobrelay.realtime.registry import ConnectionRegistry
from jobrelay.realtime.session import ClientSession, WebSocketHandle, new_session_id

logger = structlog.get_logger()
router = APIRouter()

CLOSE_UNAUTHENTICATED = 4001
CLOSE_HEARTBEAT_TIMEOUT = 4408


class SessionGateway:
    """Accepts, authenticates and serves one websocket per call to serve()."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        dispatcher: NotificationDispatcher,
        authenticator: Authenticator,
        push_timeout: float = 5.0,
        heartbeat_timeout: float = 60.0,
        allow_anonymous: bool = False,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.authenticator = authenticator
        self.push_timeout = push_timeout
        self.heartbeat_timeout = heartbeat_timeout
        self.allow_anonymous = allow_anonymous

    def _authenticate(self, websocket: WebSocket) -> Principal:
        token = websocket.query_params.get("token")
        if not token and self.allow_anonymous:
            # Development only: trust ?subject= without a credential
            subject = websocket.query_params.get("subject")
            if subject:
                return Principal(subject_id=subject)
        return self.authenticator.authenticate(token)

    async def serve(self, websocket: WebSocket) -> None:
        # ── Connecting ──────────────────────────────────────
        try:
            principal = self._authenticate(websocket)
        except AuthenticationError as e:
            logger.info("gateway.rejected", reason=str(e))
            await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=str(e))
            return

        # ── Authenticated ───────────────────────────────────
        await websocket.accept()
        session_id = new_session_id()
        handle = WebSocketHandle(websocket, session_id, push_timeout=self.push_timeout)
        session = self.registry.register(principal.subject_id, session_id, handle)
        log = logger.bind(session_id=session_id, subject_id=principal.subject_id)
        log.info("gateway.connected")

        close_code = 1000
        # ── Active ──────────────────────────────────────────
        try:
            await handle.send_json(
                {"type": "connected", "sessionId": session_id, "subjectId": principal.subject_id}
            )
            await self.dispatcher.offer_buffered(session)
            close_code = await self._read_loop(websocket, session, principal, handle)
        except WebSocketDisconnect as e:
            log.info("gateway.disconnected", code=e.code)
        except SessionPushError as e:
            log.warning("gateway.write_failed", error=e.reason)
            close_code = 1011
        finally:
            # ── Closed ──────────────────────────────────────
            self.registry.deregister(session_id)
            await handle.close(code=close_code)
            log.info("gateway.closed", code=close_code)

    async def _read_loop(
        self,
        websocket: WebSocket,
        session: ClientSession,
        principal: Principal,
        handle: WebSocketHandle,
    ) -> int:
        """Serve inbound frames until disconnect. Returns the close code."""
        while True:
            if handle.closed:
                # Evicted after a failed push; the dispatcher already closed it
                return 1011
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.info("gateway.heartbeat_timeout", session_id=session.session_id)
                return CLOSE_HEARTBEAT_TIMEOUT
            except RuntimeError as e:
                # Starlette refuses to read once the socket is closed
                logger.info("gateway.socket_gone", session_id=session.session_id, error=str(e))
                return 1000
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            if not self.registry.touch(session.session_id):
                # Evicted by the sweeper or after a failed push
                return 1000
            text = message.get("text")
            if text is None:
                await handle.send_json({"type": "error", "detail": "binary frames are not supported"})
                continue
            await self._handle_frame(text, session, principal, handle)

    async def _handle_frame(
        self,
        raw: str,
        session: ClientSession,
        principal: Principal,
        handle: WebSocketHandle,
    ) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await handle.send_json({"type": "error", "detail": "invalid JSON"})
            return
        if not isinstance(msg, dict):
            await handle.send_json({"type": "error", "detail": "frame must be an object"})
            return

        kind = msg.get("type")
        if kind == "ping":
            await handle.send_json({"type": "pong"})
        elif kind == "pong":
            return
        elif kind == "subscribe":
            await self._subscribe(msg.get("subjectId"), session, principal, handle)
        elif kind == "unsubscribe":
            subject_id = msg.get("subjectId")
            removed = bool(subject_id) and self.registry.unsubscribe(session.session_id, subject_id)
            await handle.send_json(
                {"type": "unsubscribed", "subjectId": subject_id, "ok": removed}
            )
        else:
            await handle.send_json({"type": "error", "detail": f"unknown frame type: {kind}"})

    async def _subscribe(
        self,
        subject_id: Optional[str],
        session: ClientSession,
        principal: Principal,
        handle: WebSocketHandle,
    ) -> None:
        if not subject_id or not isinstance(subject_id, str):
            await handle.send_json({"type": "error", "detail": "subjectId required"})
            return
        if not principal.may_subscribe(subject_id):
            await handle.send_json(
                {"type": "error", "detail": f"not allowed to subscribe to {subject_id}"}
            )
            return
        self.registry.subscribe(session.session_id, subject_id)
        await handle.send_json({"type": "subscribed", "subjectId": subject_id})
        await self.dispatcher.offer_buffered(session, subject_id)
        logger.info("gateway.subscribed", session_id=session.session_id, subject_id=subject_id)


@router.websocket("/ws")
async def session_websocket(websocket: WebSocket):
    """WebSocket endpoint for completion notifications."""
    runtime = websocket.app.state.relay
    await runtime.gateway.serve(websocket)
