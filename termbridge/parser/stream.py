"""Stream parser — rebuilds the conversation from raw terminal output."""

from __future__ import annotations

import codecs
import itertools
import re
from dataclasses import dataclass, field

from termbridge.models import CodeBlock, MessageRole, ParsedMessage, ToolStatus
from termbridge.parser.ansi import normalize_line
from termbridge.parser.rules import LineContext, LineKind, RuleSet, default_rules


@dataclass
class ParserState:
    """Everything the parser carries between chunks."""

    messages: list[ParsedMessage] = field(default_factory=list)
    buffer: str = ""  # Never holds a complete line
    current: ParsedMessage | None = None
    in_code_block: bool = False
    code_language: str = ""
    code_lines: list[str] = field(default_factory=list)
    last_role: MessageRole | None = None


class StreamParser:
    """
    Incremental, restartable parser for an agent's terminal output.

    Feed it chunks exactly as they arrive; chunk boundaries may fall anywhere,
    including inside an escape sequence or a UTF-8 character. A line is only
    classified once its terminating newline has been seen, so the messages
    produced do not depend on how the stream was split. Call
    :meth:`flush_buffer` when the stream ends.
    """

    def __init__(self, rules: RuleSet | None = None):
        self.rules = rules or default_rules()
        self.reset()

    def reset(self) -> None:
        """Forget everything parsed so far."""
        self.state = ParserState()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._ids = itertools.count(1)

    # ── Public API ──────────────────────────────────────────

    @property
    def messages(self) -> list[ParsedMessage]:
        """Completed messages, in arrival order."""
        return self.state.messages

    @property
    def current_message(self) -> ParsedMessage | None:
        return self.state.current

    @property
    def is_streaming(self) -> bool:
        return self.state.current is not None

    def all_messages(self) -> list[ParsedMessage]:
        """Completed messages plus the one still in progress, if any."""
        if self.state.current is None:
            return list(self.state.messages)
        return [*self.state.messages, self.state.current]

    def feed(self, chunk: bytes | str) -> list[ParsedMessage]:
        """Consume a chunk. Returns the messages it completed."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        start = len(self.state.messages)

        self.state.buffer += chunk
        *lines, self.state.buffer = self.state.buffer.split("\n")
        for raw in lines:
            self._process_line(normalize_line(raw))

        return self.state.messages[start:]

    def flush_buffer(self) -> list[ParsedMessage]:
        """End of stream: commit whatever is left so nothing is lost."""
        start = len(self.state.messages)

        self.state.buffer += self._decoder.decode(b"", final=True)
        tail = normalize_line(self.state.buffer)
        self.state.buffer = ""
        if tail.strip():
            self._process_line(tail)

        if self.state.in_code_block:
            self._close_fence(None)
        self._flush()

        return self.state.messages[start:]

    # ── Line handling ───────────────────────────────────────

    def _process_line(self, line: str) -> None:
        current = self.state.current
        ctx = LineContext(
            in_code_block=self.state.in_code_block,
            current_role=current.role if current else None,
        )
        kind, match = self.rules.classify(line, ctx)

        if kind is LineKind.FENCE_CLOSE:
            self._close_fence(line)
        elif kind is LineKind.FENCE_CONTENT:
            self.state.code_lines.append(line)
            self.state.current.append(line)
        elif kind is LineKind.FENCE_OPEN:
            self._open_fence(line, match)
        elif kind is LineKind.USER_PROMPT:
            self._flush()
            text = match.groupdict().get("text") or line.strip()
            self._commit(self._new(MessageRole.USER, text))
        elif kind is LineKind.TOOL_CALL:
            self._flush()
            groups = match.groupdict()
            self.state.current = self._new(
                MessageRole.TOOL,
                line.strip(),
                tool_name=groups.get("name"),
                tool_args=groups.get("args"),
                tool_status=ToolStatus.RUNNING,
            )
        elif kind is LineKind.TOOL_RESULT:
            self._tool_result(line)
        elif kind is LineKind.SYSTEM:
            self._flush()
            self.state.current = self._new(MessageRole.SYSTEM, line.strip())
        else:
            self._text(line)

    def _text(self, line: str) -> None:
        current = self.state.current
        if current is not None and self._accepts(current, line):
            current.append(line)
            return
        if not line.strip():
            return
        self._flush()
        self.state.current = self._new(MessageRole.ASSISTANT, line)

    @staticmethod
    def _accepts(message: ParsedMessage, line: str) -> bool:
        """Can a plain line continue ``message``?"""
        if message.role is MessageRole.ASSISTANT:
            return True
        if message.role is MessageRole.TOOL:
            # Indented lines continue tool output after the result marker
            return message.tool_status is ToolStatus.RUNNING or line[:1].isspace()
        return False

    def _tool_result(self, line: str) -> None:
        current = self.state.current
        result = line.strip()
        if self.rules.is_error(line):
            current.tool_status = ToolStatus.ERROR
        elif current.tool_status is not ToolStatus.ERROR:
            current.tool_status = ToolStatus.COMPLETED
        current.tool_result = f"{current.tool_result}\n{result}" if current.tool_result else result
        current.append(line)

    def _open_fence(self, line: str, match: re.Match) -> None:
        if self.state.current is None:
            self.state.current = self._new(MessageRole.ASSISTANT, "")
        self.state.current.append(line)
        self.state.in_code_block = True
        self.state.code_language = match.group("lang") or ""
        self.state.code_lines = []

    def _close_fence(self, line: str | None) -> None:
        current = self.state.current
        current.code_block = CodeBlock(
            language=self.state.code_language,
            code="\n".join(self.state.code_lines),
        )
        if line is not None:
            current.append(line)
        self.state.in_code_block = False
        self.state.code_language = ""
        self.state.code_lines = []

    # ── Message bookkeeping ─────────────────────────────────

    def _new(self, role: MessageRole, content: str, **metadata) -> ParsedMessage:
        return ParsedMessage(id=f"msg-{next(self._ids)}", role=role, content=content, **metadata)

    def _flush(self) -> None:
        """Commit the current message unless it is empty."""
        current, self.state.current = self.state.current, None
        if current is not None and not current.is_empty():
            self._commit(current)

    def _commit(self, message: ParsedMessage) -> None:
        message.content = message.content.lstrip("\n").rstrip()
        self.state.messages.append(message)
        self.state.last_role = message.role
