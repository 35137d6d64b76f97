"""Configuration management for termbridge."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


TERMBRIDGE_DIR = Path.home() / ".termbridge"
CONFIG_FILE = TERMBRIDGE_DIR / "config.yaml"
USER_PATTERNS_FILE = TERMBRIDGE_DIR / "patterns.yaml"


class ServerConfig(BaseModel):
    """Server settings."""

    port: int = 3847
    host: str = "localhost"


class AgentConfig(BaseModel):
    """How to launch the wrapped CLI."""

    command: str = "claude"
    args: list[str] = Field(default_factory=list)
    plan_flag: str = "--plan"
    working_dir: str = ""  # Empty means the server's cwd
    cols: int = 120
    rows: int = 30
    env: dict[str, str] = Field(default_factory=dict)
    kill_grace_seconds: float = 2.0
    prefer_pty: bool = True


class HeartbeatConfig(BaseModel):
    """WebSocket heartbeat settings."""

    interval_seconds: float = 30.0
    max_missed: int | None = None  # None keeps the heartbeat advisory


class TermBridgeConfig(BaseModel):
    """Root configuration model."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)


def ensure_dirs() -> None:
    """Create the termbridge directory if it doesn't exist."""
    TERMBRIDGE_DIR.mkdir(parents=True, exist_ok=True)


def load_config(path: Path | None = None) -> TermBridgeConfig:
    """Load configuration from ~/.termbridge/config.yaml, falling back to defaults."""
    path = path or CONFIG_FILE
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return TermBridgeConfig(**raw)
    return TermBridgeConfig()


def save_default_config() -> Path:
    """Write default config to ~/.termbridge/config.yaml."""
    ensure_dirs()
    config = TermBridgeConfig()
    with open(CONFIG_FILE, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
    return CONFIG_FILE


def load_yaml(path: Path) -> dict[str, Any]:
    """Safely load a YAML file, returning empty dict on failure."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}
