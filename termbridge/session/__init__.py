"""Process sessions: transports, lifecycle events and the registry."""

from termbridge.session.errors import ResourceUnavailable, SpawnFailure, TermBridgeError
from termbridge.session.events import (
    SessionCreated,
    SessionError,
    SessionEvent,
    SessionExited,
    SessionKilled,
)
from termbridge.session.registry import Session, SessionRegistry
from termbridge.session.transport import ResizeResult, TransportKind

__all__ = [
    "ResizeResult",
    "ResourceUnavailable",
    "Session",
    "SessionCreated",
    "SessionError",
    "SessionEvent",
    "SessionExited",
    "SessionKilled",
    "SessionRegistry",
    "SpawnFailure",
    "TermBridgeError",
    "TransportKind",
]
