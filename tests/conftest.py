"""Shared fixtures: a fake transport so registry and gateway tests spawn nothing."""

from __future__ import annotations

import asyncio
import itertools
import json
import sys

import pytest
from fastapi import WebSocketDisconnect

from termbridge.config import AgentConfig
from termbridge.session.registry import SessionRegistry
from termbridge.session.transport import ProcessTransport, ResizeResult, TransportKind

_pids = itertools.count(1000)


class FakeTransport(ProcessTransport):
    """Records what the registry asks of it; the test drives output and exit."""

    def __init__(self, on_data, on_exit, kill_grace_seconds=2.0, kind=TransportKind.PTY):
        super().__init__(on_data, on_exit, kill_grace_seconds)
        self.kind = kind
        self.command: list[str] = []
        self.env: dict[str, str] = {}
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.killed = False
        self._fake_pid: int | None = None

    @property
    def pid(self) -> int | None:
        return self._fake_pid

    async def start(self, command, cwd, env, cols, rows) -> None:
        self.command = command
        self.env = env
        self.sizes.append((cols, rows))
        self._fake_pid = next(_pids)

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> ResizeResult:
        if self.kind is TransportKind.PIPE:
            return ResizeResult.UNSUPPORTED
        self.sizes.append((cols, rows))
        return ResizeResult.OK

    def kill(self) -> None:
        self.killed = True

    # Test controls
    def emit(self, data: bytes) -> None:
        self.on_data(data)

    def finish(self, returncode: int | None = 0) -> None:
        self.on_exit(returncode)


class FakeSpawner:
    """Stands in for ``spawn_transport`` and counts every process it starts."""

    def __init__(self, kind: TransportKind = TransportKind.PTY):
        self.kind = kind
        self.spawned: list[FakeTransport] = []
        self.fail_with: Exception | None = None
        self.no_pid = False

    async def __call__(self, command, *, cwd, env, cols, rows, on_data, on_exit,
                       prefer_pty=True, kill_grace_seconds=2.0):
        if self.fail_with is not None:
            raise self.fail_with
        transport = FakeTransport(on_data, on_exit, kill_grace_seconds, kind=self.kind)
        await transport.start(command, cwd, env, cols, rows)
        if self.no_pid:
            transport._fake_pid = None
        self.spawned.append(transport)
        return transport


class FakeWebSocket:
    """Just enough of Starlette's WebSocket for the gateway."""

    def __init__(self):
        self.incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.sent: list[dict] = []
        self.close_code: int | None = None

    async def receive_text(self) -> str:
        message = await self.incoming.get()
        if message is None:
            raise WebSocketDisconnect(code=1000)
        if isinstance(message, bytes):
            # What Starlette does when a text read meets a binary frame
            raise KeyError("text")
        return message

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.incoming.put_nowait(None)

    def push(self, type_: str, **payload) -> None:
        self.incoming.put_nowait(json.dumps({"type": type_, "payload": payload}))

    def push_raw(self, raw: str | bytes) -> None:
        self.incoming.put_nowait(raw)

    def disconnect(self) -> None:
        self.incoming.put_nowait(None)

    def of_type(self, type_: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == type_]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def agent_config() -> AgentConfig:
    # The test interpreter is always resolvable on PATH by absolute path
    return AgentConfig(command=sys.executable, args=["--fake"])


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def registry(agent_config, spawner) -> SessionRegistry:
    return SessionRegistry(agent_config, spawner=spawner)


@pytest.fixture
def events(registry) -> list:
    received: list = []
    registry.subscribe_events(received.append)
    return received
