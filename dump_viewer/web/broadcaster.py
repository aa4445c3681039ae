"""WebSocket session registry and fan-out.

Pure transport: sessions in, envelopes out. Requests from the browser are
published as SessionEvent for the orchestrator to fulfil.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import string
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..types import DumpRecord, ServerStatus, SessionEvent, SessionEventKind, utc_now

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionEvent], Any]

WELCOME_MESSAGE = "Connected to Symfony Dump Viewer"

# Close code for sessions pruned as stale or too slow to keep up.
GOING_AWAY = 1001

# Inbound message type -> published event kind
_ROUTES: dict[str, SessionEventKind] = {
    "requestStatus": SessionEventKind.REQUEST_STATUS,
    "requestDumps": SessionEventKind.REQUEST_DUMPS,
    "clearDumps": SessionEventKind.CLEAR_DUMPS,
    "filterDumps": SessionEventKind.FILTER_DUMPS,
}

_ID_ALPHABET = string.digits + string.ascii_lowercase


def envelope(msg_type: str, data: Any = None) -> dict:
    """Outbound wire shape: ``{"type", "data", "timestamp"}``."""
    return {"type": msg_type, "data": data, "timestamp": utc_now().isoformat()}


def new_session_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"client_{int(time.time() * 1000)}_{suffix}"


def _is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


@dataclass
class ConnectedSession:
    id: str
    websocket: WebSocket
    connected_at: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    messages_sent: int = 0
    # Serializes sends so each session sees envelopes in broadcast order.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "connectedAt": self.connected_at.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "messagesSent": self.messages_sent,
        }


class Broadcaster:
    """Track live sessions and deliver envelopes to them.

    Delivery is best effort. A session whose socket is no longer open, whose
    send raises, or whose send does not finish within ``send_timeout``
    seconds is dropped; the other sessions are unaffected.
    """

    def __init__(
        self,
        *,
        send_timeout: float = 5.0,
        log: logging.Logger | None = None,
    ) -> None:
        self._sessions: dict[str, ConnectedSession] = {}
        self._listeners: list[SessionListener] = []
        self._heartbeat_task: asyncio.Task | None = None
        self.send_timeout = send_timeout
        self._log = log or logger
        self.total_connections = 0
        self.messages_sent = 0
        self.send_failures = 0

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    async def _publish(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._log.exception("Session listener failed for %s", event.kind.value)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> ConnectedSession:
        await websocket.accept()
        session = ConnectedSession(id=new_session_id(), websocket=websocket)
        self._sessions[session.id] = session
        self.total_connections += 1
        self._log.info("Client connected: %s (%d active)", session.id, len(self._sessions))
        await self._deliver(
            session,
            json.dumps(envelope("status", {"message": WELCOME_MESSAGE, "clientId": session.id})),
        )
        await self._publish(SessionEvent(SessionEventKind.CONNECTED, session.id))
        return session

    async def handle(self, session: ConnectedSession) -> None:
        """Receive loop for one session. Returns when the client goes away."""
        websocket = session.websocket
        try:
            while session.id in self._sessions:
                text = await websocket.receive_text()
                session.last_seen = utc_now()
                await self._on_message(session, text)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Starlette raises RuntimeError when receiving on a closed socket.
            self._log.debug("Session %s receive ended: %s", session.id, e)
        finally:
            await self._drop(session.id)

    async def serve(self, websocket: WebSocket) -> None:
        session = await self.connect(websocket)
        await self.handle(session)

    async def _on_message(self, session: ConnectedSession, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            message = None
        if not isinstance(message, dict):
            self._log.debug("Invalid message from %s: %.100s", session.id, text)
            await self.send(session.id, "error", {"message": "Invalid message format"})
            return

        msg_type = message.get("type")
        if msg_type == "ping":
            await self.send(session.id, "pong", {"message": "pong"})
            return

        kind = _ROUTES.get(msg_type) if isinstance(msg_type, str) else None
        if kind is None:
            self._log.warning("Unknown message type from client %s: %s", session.id, msg_type)
            await self.send(session.id, "error", {"message": f"Unknown message type: {msg_type}"})
            return

        payload = message.get("data")
        await self._publish(
            SessionEvent(kind, session.id, payload if isinstance(payload, dict) else None)
        )

    async def _drop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self._log.info("Client disconnected: %s (%d active)", session_id, len(self._sessions))
        await self._publish(SessionEvent(SessionEventKind.DISCONNECTED, session_id))

    async def _close(self, session: ConnectedSession, code: int) -> None:
        """Close the transport so the peer sees ``onclose`` and can reconnect."""
        if not _is_open(session.websocket):
            return
        try:
            await asyncio.wait_for(session.websocket.close(code=code), self.send_timeout)
        except Exception as e:
            self._log.debug("Closing %s failed: %s", session.id, e)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, session: ConnectedSession, text: str) -> bool:
        timed_out = False
        async with session.lock:
            # Membership may have changed while waiting for the lock.
            if session.id not in self._sessions:
                return False
            sent = _is_open(session.websocket)
            if not sent:
                self._log.debug("Pruning closed session %s", session.id)
            else:
                try:
                    await asyncio.wait_for(session.websocket.send_text(text), self.send_timeout)
                except asyncio.TimeoutError:
                    sent = False
                    timed_out = True
                    self.send_failures += 1
                    self._log.warning(
                        "Send to %s timed out after %.1fs, dropping slow session",
                        session.id, self.send_timeout,
                    )
                except Exception as e:
                    sent = False
                    self.send_failures += 1
                    self._log.warning("Send to %s failed, dropping session: %s", session.id, e)
        if not sent:
            await self._drop(session.id)
            if timed_out:
                await self._close(session, GOING_AWAY)
            return False
        session.messages_sent += 1
        self.messages_sent += 1
        return True

    async def broadcast(self, msg_type: str, data: Any = None) -> int:
        """Send to every open session concurrently. Returns the number reached."""
        sessions = list(self._sessions.values())
        if not sessions:
            return 0
        text = json.dumps(envelope(msg_type, data))
        results = await asyncio.gather(*(self._deliver(s, text) for s in sessions))
        return sum(1 for ok in results if ok)

    async def send(self, session_id: str, msg_type: str, data: Any = None) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return await self._deliver(session, json.dumps(envelope(msg_type, data)))

    async def broadcast_dump(self, record: DumpRecord) -> int:
        return await self.broadcast("dump", record.to_dict())

    async def broadcast_status(self, status: ServerStatus) -> int:
        return await self.broadcast("status", status.to_dict())

    async def broadcast_clear(self) -> int:
        return await self.broadcast("clear", None)

    async def broadcast_error(self, message: str) -> int:
        return await self.broadcast("error", {"message": message})

    async def send_dumps(self, session_id: str, records: Iterable[DumpRecord]) -> bool:
        return await self.send(session_id, "dumps", [r.to_dict() for r in records])

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def start_heartbeat(self, interval: float = 30.0, stale_after: float | None = None) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(interval, stale_after or interval * 2)
        )

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self, interval: float, stale_after: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat(stale_after)

    async def heartbeat(self, stale_after: float = 60.0) -> int:
        """One liveness pass. Returns how many sessions were pruned."""
        before = len(self._sessions)
        cutoff = utc_now() - timedelta(seconds=stale_after)
        for session in list(self._sessions.values()):
            if session.last_seen < cutoff:
                self._log.info("Pruning stale session %s", session.id)
                await self._drop(session.id)
                await self._close(session, GOING_AWAY)
        await self.broadcast("pong", {"message": "heartbeat"})
        return before - len(self._sessions)

    # ------------------------------------------------------------------
    # Introspection / shutdown
    # ------------------------------------------------------------------

    def connected_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[ConnectedSession]:
        return list(self._sessions.values())

    def stats(self) -> dict:
        return {
            "connectedClients": len(self._sessions),
            "totalConnections": self.total_connections,
            "messagesSent": self.messages_sent,
            "sendFailures": self.send_failures,
            "sessions": [s.to_dict() for s in self._sessions.values()],
        }

    async def close_all(self, code: int = 1000) -> None:
        await self.stop_heartbeat()
        for session in list(self._sessions.values()):
            self._sessions.pop(session.id, None)
            if _is_open(session.websocket):
                try:
                    await session.websocket.close(code=code)
                except Exception as e:
                    self._log.debug("Closing %s failed: %s", session.id, e)
