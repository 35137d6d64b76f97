"""Server-side structured transcripts, one stream parser per session."""

from __future__ import annotations

import logging
from collections.abc import Callable

from termbridge.parser.rules import RuleSet
from termbridge.parser.stream import StreamParser
from termbridge.session.events import SessionCreated, SessionEvent, SessionExited
from termbridge.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


class TranscriptStore:
    """
    Parses every session's output alongside whatever browsers are attached.

    Each parser is just another output subscriber on the registry, so it sees
    exactly the bytes the raw terminal mirror sees.
    """

    def __init__(self, registry: SessionRegistry, rules: RuleSet | None = None):
        self.registry = registry
        self.rules = rules
        self._parsers: dict[str, StreamParser] = {}
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._stop = registry.subscribe_events(self._on_event)

    def _on_event(self, event: SessionEvent) -> None:
        if isinstance(event, SessionCreated):
            parser = StreamParser(self.rules)
            self._parsers[event.session_id] = parser
            self._unsubscribers[event.session_id] = self.registry.on_data(
                event.session_id, parser.feed
            )
        elif isinstance(event, SessionExited):
            unsubscribe = self._unsubscribers.pop(event.session_id, None)
            if unsubscribe is not None:
                unsubscribe()
            parser = self._parsers.get(event.session_id)
            if parser is not None:
                parser.flush_buffer()
                logger.debug(
                    "Transcript for %s closed with %d messages",
                    event.session_id,
                    len(parser.messages),
                )

    def get(self, session_id: str) -> StreamParser | None:
        return self._parsers.get(session_id)

    def close(self) -> None:
        self._stop()
        for unsubscribe in self._unsubscribers.values():
            unsubscribe()
        self._unsubscribers.clear()
