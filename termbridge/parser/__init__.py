"""Reconstructs a role-tagged conversation from raw terminal output."""

from termbridge.parser.ansi import strip_ansi
from termbridge.parser.stream import StreamParser

__all__ = ["StreamParser", "strip_ansi"]
