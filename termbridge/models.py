"""Shared data models for termbridge."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """Who a parsed message is attributed to."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ToolStatus(str, Enum):
    """Progress of a tool invocation."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class CodeBlock(BaseModel):
    """A fenced code block found inside a message."""

    language: str = ""
    code: str = ""


class ParsedMessage(BaseModel):
    """One role-tagged unit of the reconstructed conversation."""

    id: str
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tool_name: str | None = None
    tool_args: str | None = None
    tool_status: ToolStatus | None = None
    tool_result: str | None = None
    code_block: CodeBlock | None = None

    def is_empty(self) -> bool:
        """True if there is nothing worth committing."""
        return not self.content.strip() and self.code_block is None

    def append(self, line: str) -> None:
        self.content = f"{self.content}\n{line}" if self.content else line


class SessionInfo(BaseModel):
    """Public view of a registry session."""

    session_id: str
    transport: str
    active: bool
    pid: int | None = None
    plan_path: str | None = None
    created_at: datetime
    exit_code: int | None = None
    signal: int | None = None
