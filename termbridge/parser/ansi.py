"""Terminal escape handling."""

from __future__ import annotations

import re

# OSC (BEL or ST terminated), CSI, charset selection, other two-byte escapes,
# then bare C0 controls other than \t \n \r.
_ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b[()*+][0-9A-Za-z]"
    r"|\x1b[@-Z\\-_=>78]"
    r"|[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]"
)
_STRAY_ESC_RE = re.compile(r"\x1b")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters, keeping \\n, \\r and \\t."""
    return _STRAY_ESC_RE.sub("", _ANSI_RE.sub("", text))


def normalize_line(raw: str) -> str:
    """
    Clean one complete terminal line.

    Escapes are stripped and carriage returns resolved the way a terminal
    would show them: only the text written after the last ``\\r`` survives.
    """
    line = strip_ansi(raw).rstrip("\r")
    if "\r" in line:
        line = line.rsplit("\r", 1)[1]
    return line
