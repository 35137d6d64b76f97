"""Session registry — owns every agent process and fans out its output."""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial

from termbridge.config import AgentConfig
from termbridge.models import SessionInfo
from termbridge.session.errors import ResourceUnavailable, SpawnFailure, TermBridgeError
from termbridge.session.events import (
    SessionCreated,
    SessionError,
    SessionEvent,
    SessionExited,
    SessionKilled,
)
from termbridge.session.transport import (
    ProcessTransport,
    ResizeResult,
    Spawner,
    TransportKind,
    pty_available,
    spawn_transport,
)

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class _Subscription:
    __slots__ = ("callback", "active")

    def __init__(self, callback: Callable):
        self.callback = callback
        self.active = True


def _noop() -> None:
    pass


@dataclass
class Session:
    """One supervised instance of the wrapped CLI."""

    id: str
    plan_path: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    transport: ProcessTransport | None = None
    active: bool = False
    exit_code: int | None = None
    signal: int | None = None
    exited: bool = False
    subscribers: list[_Subscription] = field(default_factory=list)

    @property
    def kind(self) -> TransportKind | None:
        return self.transport.kind if self.transport else None

    @property
    def pid(self) -> int | None:
        return self.transport.pid if self.transport else None

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.id,
            transport=self.kind.value if self.kind else "",
            active=self.active,
            pid=self.pid,
            plan_path=self.plan_path,
            created_at=self.created_at,
            exit_code=self.exit_code,
            signal=self.signal,
        )


class SessionRegistry:
    """
    Creates, tracks and tears down agent sessions.

    Any number of sessions may be live at once and each may have any number
    of output subscribers. Lifecycle changes are reported to listeners
    registered with :meth:`subscribe_events`; failures are raised to the
    caller and reported there as :class:`SessionError` as well.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        spawner: Spawner = spawn_transport,
    ):
        self.config = config or AgentConfig()
        self._spawner = spawner
        self._sessions: dict[str, Session] = {}
        self._listeners: list[_Subscription] = []
        self._counter = itertools.count(1)
        self._binary: str | None = None
        self._binary_checked = False

    # ── Capabilities ────────────────────────────────────────

    def resolve_binary(self) -> str | None:
        """Locate the wrapped CLI on PATH. Looked up once, then cached."""
        if not self._binary_checked:
            self._binary = shutil.which(self.config.command)
            self._binary_checked = True
            if self._binary is None:
                logger.warning("'%s' not found on PATH", self.config.command)
        return self._binary

    @property
    def agent_available(self) -> bool:
        return self.resolve_binary() is not None

    @property
    def terminal_mode(self) -> TransportKind:
        if self.config.prefer_pty and pty_available():
            return TransportKind.PTY
        return TransportKind.PIPE

    # ── Lifecycle ───────────────────────────────────────────

    async def create(self, plan_path: str | None = None) -> Session:
        """Spawn a new agent process and register it."""
        try:
            return await self._create(plan_path)
        except TermBridgeError as e:
            self._emit(SessionError(session_id=None, error=e.message, code=e.code))
            raise

    async def _create(self, plan_path: str | None) -> Session:
        binary = self.resolve_binary()
        if binary is None:
            raise ResourceUnavailable(
                f"'{self.config.command}' was not found on PATH. "
                "Install it or set agent.command in the config."
            )

        command = [binary, *self.config.args]
        if plan_path:
            command += [self.config.plan_flag, plan_path]

        session = Session(id=self._next_id(), plan_path=plan_path)
        env = {
            **os.environ,
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
            **self.config.env,
        }

        try:
            transport = await self._spawner(
                command,
                cwd=self.config.working_dir or os.getcwd(),
                env=env,
                cols=self.config.cols,
                rows=self.config.rows,
                on_data=partial(self._dispatch, session),
                on_exit=partial(self._handle_exit, session),
                prefer_pty=self.config.prefer_pty,
                kill_grace_seconds=self.config.kill_grace_seconds,
            )
        except (OSError, ValueError) as e:
            # ValueError: arguments the OS cannot take, e.g. an embedded NUL
            raise SpawnFailure(f"Failed to start {self.config.command}: {e}") from e

        if transport.pid is None:
            raise SpawnFailure(f"Failed to start {self.config.command}: no pid obtained")

        session.transport = transport
        session.active = True
        self._sessions[session.id] = session

        logger.info(
            "Session %s created (%s, pid=%s)", session.id, transport.kind.value, transport.pid
        )
        self._emit(SessionCreated(session_id=session.id, plan_path=plan_path))
        return session

    def _next_id(self) -> str:
        return f"session-{next(self._counter)}-{int(time.time() * 1000)}"

    def kill(self, session_id: str) -> bool:
        """Kill a session. Returns False if it was missing or already inactive."""
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return False
        session.active = False
        session.transport.kill()
        logger.info("Session %s killed", session_id)
        self._emit(SessionKilled(session_id=session_id))
        return True

    def kill_all(self) -> None:
        """Kill every session and empty the registry."""
        for session_id in list(self._sessions):
            self.kill(session_id)
        self._sessions.clear()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Kill everything and wait (bounded) for the processes to go away."""
        transports = [s.transport for s in self._sessions.values() if s.transport]
        self.kill_all()
        if not transports:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(t.wait_closed() for t in transports)), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Some sessions did not exit within %.1fs", timeout)
        logger.info("All sessions cleaned up")

    def _handle_exit(self, session: Session, returncode: int | None) -> None:
        if session.exited:
            return
        session.exited = True
        session.active = False
        if returncode is not None and returncode < 0:
            session.exit_code, session.signal = None, -returncode
        else:
            session.exit_code, session.signal = returncode, None
        logger.info(
            "Session %s exited (code=%s, signal=%s)",
            session.id,
            session.exit_code,
            session.signal,
        )
        self._emit(
            SessionExited(
                session_id=session.id,
                exit_code=session.exit_code,
                signal=session.signal,
            )
        )

    # ── I/O ─────────────────────────────────────────────────

    def write(self, session_id: str, data: bytes | str) -> bool:
        """Send input to a session. Never raises; False if it cannot be delivered."""
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            session.transport.write(data)
        except OSError as e:
            logger.warning("Write to session %s failed: %s", session_id, e)
            self._emit(SessionError(session_id=session_id, error=str(e), code="WRITE_FAILED"))
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> ResizeResult:
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return ResizeResult.NO_SESSION
        try:
            return session.transport.resize(cols, rows)
        except OSError as e:
            logger.warning("Resize of session %s failed: %s", session_id, e)
            return ResizeResult.NO_SESSION

    def on_data(self, session_id: str, callback: Callable[[bytes], None]) -> Unsubscribe:
        """Subscribe to a session's output. Any number of subscribers is allowed."""
        session = self._sessions.get(session_id)
        if session is None:
            return _noop
        sub = _Subscription(callback)
        session.subscribers.append(sub)

        def unsubscribe() -> None:
            sub.active = False
            if sub in session.subscribers:
                session.subscribers.remove(sub)

        return unsubscribe

    def _dispatch(self, session: Session, data: bytes) -> None:
        # Snapshot: callbacks may (un)subscribe while we iterate
        for sub in list(session.subscribers):
            if not sub.active:
                continue
            try:
                sub.callback(data)
            except Exception:
                logger.exception("Output subscriber of session %s failed", session.id)

    # ── Events ──────────────────────────────────────────────

    def subscribe_events(self, callback: Callable[[SessionEvent], None]) -> Unsubscribe:
        sub = _Subscription(callback)
        self._listeners.append(sub)

        def unsubscribe() -> None:
            sub.active = False
            if sub in self._listeners:
                self._listeners.remove(sub)

        return unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        for sub in list(self._listeners):
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Session event listener failed on %r", event)

    # ── Lookup ──────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.active

    def active_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if s.active]

    def list_sessions(self) -> list[SessionInfo]:
        return [s.info() for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)
