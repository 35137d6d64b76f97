"""Lifecycle errors raised by the session registry."""

from __future__ import annotations


class TermBridgeError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ResourceUnavailable(TermBridgeError):
    """The wrapped CLI binary cannot be found on PATH."""

    code = "CLAUDE_NOT_FOUND"


class SpawnFailure(TermBridgeError):
    """The OS refused to create the agent process."""

    code = "SPAWN_FAILED"
