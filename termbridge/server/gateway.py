"""Connection gateway — binds one browser WebSocket to at most one agent session."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from termbridge.config import HeartbeatConfig
from termbridge.server.protocol import (
    ClientEnvelope,
    CreateSessionPayload,
    ResizePayload,
    TerminalInputPayload,
)
from termbridge.session.errors import TermBridgeError
from termbridge.session.events import (
    SessionError,
    SessionEvent,
    SessionExited,
    SessionKilled,
)
from termbridge.session.registry import SessionRegistry
from termbridge.session.transport import ResizeResult

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ATTACHED = "attached"


class HeartbeatState(str, Enum):
    ALIVE = "alive"
    SUSPECT = "suspect"


class ConnectionGateway:
    """
    Per-connection state machine: Idle → Starting → Attached → Idle.

    Client messages are handled one at a time in the order received. Everything
    sent to the client goes through a single outbound queue, so terminal output
    and lifecycle notifications reach the browser in the order they happened.
    Closing the connection detaches from the session but leaves it running, so
    a reloaded tab can reattach with ``?sessionId=``.
    """

    def __init__(
        self,
        websocket: WebSocket,
        registry: SessionRegistry,
        heartbeat: HeartbeatConfig | None = None,
    ):
        self.websocket = websocket
        self.registry = registry
        self.heartbeat = heartbeat or HeartbeatConfig()

        self.state = ConnectionState.IDLE
        self.heartbeat_state = HeartbeatState.ALIVE
        self.session_id: str | None = None
        self.missed_pongs = 0

        self._unsubscribe: Callable[[], None] | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._awaiting_pong = False
        self._closed = False
        self._reader_task: asyncio.Task | None = None

        self._handlers: dict[str, Callable[[dict], Awaitable[None]]] = {
            "create-session": self._handle_create_session,
            "terminal-input": self._handle_terminal_input,
            "resize": self._handle_resize,
            "kill-session": self._handle_kill_session,
            "pong": self._handle_pong,
        }

    # ── Connection lifecycle ────────────────────────────────

    async def run(self, requested_session_id: str | None = None) -> None:
        """Serve the (already accepted) connection until it closes."""
        unsubscribe_events = self.registry.subscribe_events(self._on_session_event)
        writer = asyncio.create_task(self._write_loop())
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            self.send({
                "type": "connected",
                "terminalMode": self.registry.terminal_mode.value,
                "claudeAvailable": self.registry.agent_available,
            })
            if requested_session_id:
                self.attach(requested_session_id)

            self._reader_task = asyncio.create_task(self._read_loop())
            try:
                await self._reader_task
            except asyncio.CancelledError:
                if not self._closed:
                    raise
        finally:
            self._closed = True
            unsubscribe_events()
            self._detach()
            for task in (heartbeat, writer):
                task.cancel()
            await asyncio.gather(heartbeat, writer, return_exceptions=True)
            logger.debug("Connection closed")

    async def _read_loop(self) -> None:
        while True:
            try:
                raw = await self.websocket.receive_text()
            except WebSocketDisconnect:
                return
            except KeyError:
                # Starlette raises KeyError('text') for a binary frame
                self.send_error("Binary frames are not supported; send JSON text.")
                continue
            await self.handle_message(raw)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.debug("Send failed, dropping connection output: %s", e)
                return

    def send(self, message: dict[str, Any]) -> None:
        """Queue a message for this client. Never blocks."""
        if not self._closed:
            self._outbox.put_nowait(message)

    def send_error(self, message: str) -> None:
        self.send({"type": "error", "message": message})

    # ── Client commands ─────────────────────────────────────

    async def handle_message(self, raw: str) -> None:
        """Dispatch one client message. Bad input is answered, never fatal."""
        try:
            envelope = ClientEnvelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            self.send_error("Invalid message: expected JSON {type, payload}")
            return

        handler = self._handlers.get(envelope.type)
        if handler is None:
            self.send_error(f"Unknown message type: {envelope.type}")
            return

        try:
            await handler(envelope.payload)
        except ValidationError as e:
            self.send_error(f"Invalid {envelope.type} payload: {e.errors()[0]['msg']}")

    async def _handle_create_session(self, payload: dict) -> None:
        options = CreateSessionPayload.model_validate(payload)
        if self.session_id is not None:
            self._teardown()

        self.state = ConnectionState.STARTING
        try:
            session = await self.registry.create(plan_path=options.plan_path)
        except TermBridgeError as e:
            # Already delivered to us through the SessionError event
            logger.info("create-session failed: %s (%s)", e.message, e.code)
            self.state = ConnectionState.IDLE
            return

        if self._closed:
            # Client went away while the process was starting
            self.registry.kill(session.id)
            return

        self._bind(session.id)
        self.send({
            "type": "session-created",
            "sessionId": session.id,
            "planPath": session.plan_path,
        })

    async def _handle_terminal_input(self, payload: dict) -> None:
        message = TerminalInputPayload.model_validate(payload)
        if self.session_id is None:
            self.send_error("No active session. Create a session first.")
            return
        if not self.registry.write(self.session_id, message.data):
            self.send_error("Session is not accepting input.")

    async def _handle_resize(self, payload: dict) -> None:
        size = ResizePayload.model_validate(payload)
        if self.session_id is None:
            self.send_error("No active session to resize.")
            return
        result = self.registry.resize(self.session_id, size.cols, size.rows)
        if result is ResizeResult.UNSUPPORTED:
            self.send({
                "type": "session-error",
                "error": "Resize is not supported without a pseudo-terminal.",
                "code": "RESIZE_UNSUPPORTED",
            })
        elif result is ResizeResult.NO_SESSION:
            self.send_error("Session is no longer active.")

    async def _handle_kill_session(self, payload: dict) -> None:
        if self.session_id is not None:
            self._teardown()
        self.send({"type": "session-killed"})

    async def _handle_pong(self, payload: dict) -> None:
        self._awaiting_pong = False
        self.missed_pongs = 0
        self.heartbeat_state = HeartbeatState.ALIVE

    # ── Session binding ─────────────────────────────────────

    def attach(self, session_id: str) -> bool:
        """Reattach to a still-running session instead of spawning a new one."""
        if not self.registry.is_active(session_id):
            logger.info("Cannot reattach to %s: not active", session_id)
            return False
        self._bind(session_id)
        self.send({"type": "session-attached", "sessionId": session_id})
        return True

    def _bind(self, session_id: str) -> None:
        self.session_id = session_id
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._unsubscribe = self.registry.on_data(session_id, self._on_output)
        self.state = ConnectionState.ATTACHED

    def _detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.session_id = None
        self.state = ConnectionState.IDLE

    def _teardown(self) -> None:
        """Detach from and kill the bound session."""
        session_id = self.session_id
        self._detach()
        if session_id is not None:
            self.registry.kill(session_id)

    def _on_output(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            self.send({"type": "terminal-data", "data": text})

    def _on_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, SessionError):
            # Pre-session errors go to every connection still without a session
            if event.session_id == self.session_id:
                self.send({"type": "session-error", "error": event.error, "code": event.code})
            return

        if event.session_id != self.session_id or self.session_id is None:
            return

        if isinstance(event, SessionExited):
            self._detach()
            self.send({
                "type": "session-exit",
                "exitCode": event.exit_code,
                "signal": event.signal,
            })
        elif isinstance(event, SessionKilled):
            self._detach()
            self.send({"type": "session-killed"})

    # ── Heartbeat ───────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat.interval_seconds)
            if self._awaiting_pong:
                self.missed_pongs += 1
                self.heartbeat_state = HeartbeatState.SUSPECT
                logger.warning("No pong from client (%d missed)", self.missed_pongs)
                max_missed = self.heartbeat.max_missed
                if max_missed and self.missed_pongs >= max_missed:
                    await self._reap()
                    return
            self._awaiting_pong = True
            self.send({"type": "ping"})

    async def _reap(self) -> None:
        logger.warning("Closing unresponsive connection")
        self._closed = True
        try:
            await self.websocket.close(code=1001)
        except RuntimeError:
            # Already closed by the other side
            pass
        if self._reader_task is not None:
            self._reader_task.cancel()
