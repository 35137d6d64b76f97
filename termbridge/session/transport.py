"""Process transports — pseudo-terminal and plain-pipe children behind one interface."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import struct
import sys
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Optional

try:
    import fcntl
    import pty
    import termios
except ImportError:  # Windows has no pty support
    fcntl = pty = termios = None

logger = logging.getLogger(__name__)

READ_SIZE = 16384

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int]], None]


class TransportKind(str, Enum):
    PTY = "pty"
    PIPE = "pipe"


class ResizeResult(Enum):
    """Outcome of a resize request."""

    OK = "ok"
    UNSUPPORTED = "unsupported"
    NO_SESSION = "no_session"

    def __bool__(self) -> bool:
        return self is ResizeResult.OK


class PtyUnavailable(Exception):
    """The host cannot allocate a pseudo-terminal."""


def pty_available() -> bool:
    """True if this platform can spawn processes on a pseudo-terminal."""
    return pty is not None and sys.platform != "win32"


def _set_nonblocking(fd: int) -> None:
    """Set a file descriptor to non-blocking mode."""
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def _set_pty_size(fd: int, rows: int, cols: int) -> None:
    """Set the PTY window size."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_tty() -> None:
    """Runs in the child after setsid(): adopt stdin's pty as controlling terminal."""
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class ProcessTransport(ABC):
    """
    One supervised child process.

    Output is pushed to ``on_data`` in the order the OS produced it, and
    ``on_exit`` fires once with the raw return code after all output has
    been delivered.
    """

    kind: TransportKind

    def __init__(
        self,
        on_data: DataCallback,
        on_exit: ExitCallback,
        kill_grace_seconds: float = 2.0,
    ):
        self.on_data = on_data
        self.on_exit = on_exit
        self.kill_grace_seconds = kill_grace_seconds
        self._proc: asyncio.subprocess.Process | None = None
        self._exit_task: asyncio.Task | None = None
        self._killed = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @abstractmethod
    async def start(
        self,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
    ) -> None:
        """Spawn the process. Raises OSError if the OS refuses."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue bytes for the child's stdin without blocking."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> ResizeResult:
        """Resize the child's terminal, if the transport has one."""

    def kill(self) -> None:
        """SIGTERM the process group now, SIGKILL it after the grace period."""
        if self._killed or self._proc is None or self._proc.returncode is not None:
            return
        self._killed = True
        self._signal_group(signal.SIGTERM)
        asyncio.get_running_loop().call_later(self.kill_grace_seconds, self._force_kill)

    def _force_kill(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            logger.debug("pid %s ignored SIGTERM, sending SIGKILL", self._proc.pid)
            self._signal_group(signal.SIGKILL)

    def _signal_group(self, sig: int) -> None:
        pid = self._proc.pid
        try:
            os.killpg(os.getpgid(pid), sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", pid)
        except PermissionError as e:
            logger.warning("Cannot signal pid %d: %s", pid, e)

    async def wait_closed(self) -> None:
        """Wait until the process has exited and ``on_exit`` has run."""
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)

    def _start_exit_watch(self, drain: Callable[[], Awaitable[None]]) -> None:
        self._exit_task = asyncio.create_task(self._watch_exit(drain))

    async def _watch_exit(self, drain: Callable[[], Awaitable[None]]) -> None:
        returncode = await self._proc.wait()
        await drain()
        self._close()
        self.on_exit(returncode)

    def _close(self) -> None:
        """Release OS resources once the child is gone."""


class PtyTransport(ProcessTransport):
    """Full pseudo-terminal: resize, ANSI and interactive control all work."""

    kind = TransportKind.PTY

    # How long to keep reading after exit; grandchildren may hold the slave open.
    DRAIN_TIMEOUT = 1.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._master_fd: int | None = None
        self._eof = asyncio.Event()
        self._pending = bytearray()
        self._writer_registered = False

    async def start(self, command, cwd, env, cols, rows) -> None:
        if not pty_available():
            raise PtyUnavailable("pty module not available on this platform")
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise PtyUnavailable(str(e)) from e

        try:
            _set_pty_size(master_fd, rows, cols)
            self._proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        _set_nonblocking(master_fd)
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._start_exit_watch(self._drain)

        logger.info(
            "pty child started: pid=%d cmd=%s", self._proc.pid, " ".join(command)
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave handle is closed
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self.on_data(data)

    def _stop_reading(self) -> None:
        if self._master_fd is not None and not self._eof.is_set():
            asyncio.get_running_loop().remove_reader(self._master_fd)
        self._eof.set()

    async def _drain(self) -> None:
        try:
            await asyncio.wait_for(self._eof.wait(), timeout=self.DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("pty of pid %s still held open after exit", self.pid)

    def _close(self) -> None:
        self._stop_reading()
        if self._master_fd is None:
            return
        if self._writer_registered:
            asyncio.get_running_loop().remove_writer(self._master_fd)
            self._writer_registered = False
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = None

    def write(self, data: bytes) -> None:
        if self._master_fd is None:
            return
        self._pending += data
        self._flush_pending()

    def _flush_pending(self) -> None:
        while self._pending and self._master_fd is not None:
            try:
                written = os.write(self._master_fd, self._pending)
            except BlockingIOError:
                if not self._writer_registered:
                    asyncio.get_running_loop().add_writer(
                        self._master_fd, self._flush_pending
                    )
                    self._writer_registered = True
                return
            del self._pending[:written]
        if self._writer_registered and self._master_fd is not None:
            asyncio.get_running_loop().remove_writer(self._master_fd)
            self._writer_registered = False

    def resize(self, cols: int, rows: int) -> ResizeResult:
        if self._master_fd is None:
            return ResizeResult.NO_SESSION
        _set_pty_size(self._master_fd, rows, cols)
        return ResizeResult.OK


class PipeTransport(ProcessTransport):
    """Plain stdio pipes with stderr merged into stdout. No resize."""

    kind = TransportKind.PIPE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._reader_task: asyncio.Task | None = None

    async def start(self, command, cwd, env, cols, rows) -> None:
        env = {**env, "COLUMNS": str(cols), "LINES": str(rows)}
        self._proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
        self._reader_task = asyncio.create_task(self._read_loop())
        self._start_exit_watch(self._drain)

        logger.info(
            "pipe child started: pid=%d cmd=%s", self._proc.pid, " ".join(command)
        )

    async def _read_loop(self) -> None:
        stdout = self._proc.stdout
        while True:
            data = await stdout.read(READ_SIZE)
            if not data:
                break
            self.on_data(data)

    async def _drain(self) -> None:
        try:
            await self._reader_task
        except Exception:
            logger.exception("pipe reader for pid %s failed", self.pid)

    def write(self, data: bytes) -> None:
        stdin = self._proc.stdin if self._proc else None
        if stdin is None or stdin.is_closing():
            return
        stdin.write(data)

    def resize(self, cols: int, rows: int) -> ResizeResult:
        return ResizeResult.UNSUPPORTED


Spawner = Callable[..., Awaitable[ProcessTransport]]


async def spawn_transport(
    command: list[str],
    *,
    cwd: str,
    env: dict[str, str],
    cols: int,
    rows: int,
    on_data: DataCallback,
    on_exit: ExitCallback,
    prefer_pty: bool = True,
    kill_grace_seconds: float = 2.0,
) -> ProcessTransport:
    """Start ``command`` on a pty, falling back to pipes if the host has none."""
    if prefer_pty:
        transport = PtyTransport(on_data, on_exit, kill_grace_seconds)
        try:
            await transport.start(command, cwd, env, cols, rows)
            return transport
        except PtyUnavailable as e:
            logger.warning("pty unavailable (%s), falling back to pipes", e)

    transport = PipeTransport(on_data, on_exit, kill_grace_seconds)
    await transport.start(command, cwd, env, cols, rows)
    return transport
