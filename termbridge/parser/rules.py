"""Line classification rules for the stream parser.

Rules are tried in order and the first match wins. The order is part of the
parser's observable behaviour: moving a rule changes how lines are grouped
into messages.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from termbridge.config import USER_PATTERNS_FILE, load_yaml
from termbridge.models import MessageRole

logger = logging.getLogger(__name__)


class LineKind(str, Enum):
    FENCE_CLOSE = "fence_close"
    FENCE_CONTENT = "fence_content"
    FENCE_OPEN = "fence_open"
    USER_PROMPT = "user_prompt"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    TEXT = "text"


@dataclass(frozen=True)
class LineContext:
    """Parser state a rule may depend on."""

    in_code_block: bool = False
    current_role: MessageRole | None = None


def _always(ctx: LineContext) -> bool:
    return True


def _in_fence(ctx: LineContext) -> bool:
    return ctx.in_code_block


def _outside_fence(ctx: LineContext) -> bool:
    return not ctx.in_code_block


def _in_tool(ctx: LineContext) -> bool:
    return not ctx.in_code_block and ctx.current_role is MessageRole.TOOL


@dataclass
class LineRule:
    """Compiled patterns for one kind of line."""

    kind: LineKind
    patterns: list[re.Pattern] = field(default_factory=list)
    when: Callable[[LineContext], bool] = _always

    def match(self, line: str, ctx: LineContext) -> re.Match | None:
        """Return the first pattern match, or None if the rule does not apply."""
        if not self.when(ctx):
            return None
        for pattern in self.patterns:
            m = pattern.search(line)
            if m:
                return m
        return None


# Markers follow the wrapped CLI's on-screen conventions.
FENCE_CLOSE_PATTERNS = [r"^\s*```\s*$"]
FENCE_OPEN_PATTERNS = [r"^\s*```\s*(?P<lang>[\w+#.-]*)\s*$"]
USER_PROMPT_PATTERNS = [r"^\s*[❯>]\s+(?P<text>\S.*?)\s*$"]
TOOL_CALL_PATTERNS = [
    r"^\s*(?:[⏺●]\s*)?(?P<name>[A-Z][A-Za-z0-9_]*)\((?P<args>.*)\)\s*$",
]
TOOL_RESULT_PATTERNS = [r"✓", r"✗", r"✘", r"⎿", r"Result:", r"Error:"]
TOOL_ERROR_PATTERNS = [r"✗", r"✘", r"Error:"]
SYSTEM_PATTERNS = [r"^\s*(?:⚠|ℹ|System:|\[system\])"]

# Keys accepted under ``markers:`` in the user patterns file
MARKER_KEYS = {
    "user_prompt": LineKind.USER_PROMPT,
    "tool_call": LineKind.TOOL_CALL,
    "tool_result": LineKind.TOOL_RESULT,
    "system": LineKind.SYSTEM,
}


def _compile_patterns(raw_patterns: list[str]) -> list[re.Pattern]:
    """Compile a list of regex strings, skipping invalid ones."""
    compiled = []
    for pat_str in raw_patterns:
        try:
            compiled.append(re.compile(pat_str))
        except re.error as e:
            logger.warning("Skipping invalid pattern %r: %s", pat_str, e)
    return compiled


@dataclass
class RuleSet:
    """Ordered classifier rules plus the tool error markers."""

    rules: list[LineRule] = field(default_factory=list)
    error_patterns: list[re.Pattern] = field(default_factory=list)

    def classify(self, line: str, ctx: LineContext) -> tuple[LineKind, re.Match | None]:
        """Classify a line; lines no rule claims are plain TEXT."""
        for rule in self.rules:
            m = rule.match(line, ctx)
            if m is not None:
                return rule.kind, m
        return LineKind.TEXT, None

    def is_error(self, line: str) -> bool:
        return any(p.search(line) for p in self.error_patterns)

    def get(self, kind: LineKind) -> LineRule | None:
        for rule in self.rules:
            if rule.kind is kind:
                return rule
        return None


def default_rules() -> RuleSet:
    """The built-in rule order."""
    return RuleSet(
        rules=[
            LineRule(LineKind.FENCE_CLOSE, _compile_patterns(FENCE_CLOSE_PATTERNS), _in_fence),
            LineRule(LineKind.FENCE_CONTENT, [re.compile(r"^")], _in_fence),
            LineRule(LineKind.FENCE_OPEN, _compile_patterns(FENCE_OPEN_PATTERNS), _outside_fence),
            LineRule(LineKind.USER_PROMPT, _compile_patterns(USER_PROMPT_PATTERNS), _outside_fence),
            LineRule(LineKind.TOOL_CALL, _compile_patterns(TOOL_CALL_PATTERNS), _outside_fence),
            LineRule(LineKind.TOOL_RESULT, _compile_patterns(TOOL_RESULT_PATTERNS), _in_tool),
            LineRule(LineKind.SYSTEM, _compile_patterns(SYSTEM_PATTERNS), _outside_fence),
        ],
        error_patterns=_compile_patterns(TOOL_ERROR_PATTERNS),
    )


def load_rules(path: Path | None = None) -> RuleSet:
    """Built-in rules extended with extra markers from the user patterns file.

    User patterns are appended to the matching rule; they never reorder rules.
    """
    rules = default_rules()
    user = load_yaml(path or USER_PATTERNS_FILE)
    if not isinstance(user, dict):
        logger.warning("Ignoring patterns file: expected a mapping, got %s", type(user).__name__)
        return rules

    markers = user.get("markers") or {}
    if not isinstance(markers, dict):
        logger.warning("Ignoring 'markers': expected a mapping, got %s", type(markers).__name__)
        markers = {}

    for key, raw in markers.items():
        kind = MARKER_KEYS.get(key)
        if kind is None:
            logger.warning("Unknown marker kind %r in patterns file", key)
            continue
        rules.get(kind).patterns.extend(_compile_patterns(_as_list(raw)))

    rules.error_patterns.extend(_compile_patterns(_as_list(user.get("tool_error"))))
    return rules


def _as_list(raw: Any) -> list[str]:
    """A single pattern may be given bare instead of as a list."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list):
        return [str(p) for p in raw]
    logger.warning("Ignoring patterns %r: expected a string or a list", raw)
    return []
