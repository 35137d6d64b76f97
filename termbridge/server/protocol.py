"""WebSocket message schemas.

Client messages arrive as ``{"type": ..., "payload": {...}}``. Server
messages are flat ``{"type": ..., **fields}`` dicts built by the gateway.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClientEnvelope(BaseModel):
    type: str
    payload: dict = Field(default_factory=dict)


class CreateSessionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_path: str | None = Field(default=None, alias="planPath")


class TerminalInputPayload(BaseModel):
    data: str


class ResizePayload(BaseModel):
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class SyncEvent(BaseModel):
    """A plan-file change reported by the sync watcher. Relayed untouched."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(pattern=r"^plan-(update|sync)$")
    event: str
    filename: str
    status: str | None = None
