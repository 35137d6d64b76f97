"""Lifecycle events emitted by the session registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class SessionCreated:
    session_id: str
    plan_path: str | None = None


@dataclass(frozen=True)
class SessionExited:
    session_id: str
    exit_code: int | None
    signal: int | None


@dataclass(frozen=True)
class SessionKilled:
    session_id: str


@dataclass(frozen=True)
class SessionError:
    """A lifecycle failure. ``session_id`` is None for pre-session errors."""

    session_id: str | None
    error: str
    code: str


SessionEvent = Union[SessionCreated, SessionExited, SessionKilled, SessionError]
