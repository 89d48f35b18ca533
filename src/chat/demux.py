# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Split a raw agent output stream into reasoning and answer channels.

The agent writes its intermediate reasoning first and then a marker (``AI:``
by default) followed by the final answer. Chunks arrive with no alignment to
the marker, so the marker may be split across any number of chunks. While
searching, the demultiplexer keeps a short tail of undecided text and flushes
everything older than that tail as reasoning.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from src.config.configuration import DEFAULT_ANSWER_MARKER


class Channel(str, Enum):
    REASONING = "reasoning"
    ANSWER = "answer"


class DemuxState(str, Enum):
    SEARCHING = "searching"
    ANSWERING = "answering"


@dataclass(frozen=True, slots=True)
class DemuxEvent:
    channel: Channel
    text: str


class StreamDemultiplexer:
    """Stateful two-state splitter; one instance per turn, not thread-safe."""

    def __init__(self, marker: str = DEFAULT_ANSWER_MARKER, keep: int = 10) -> None:
        if not marker:
            raise ValueError("marker must be a non-empty string")
        self._marker = marker
        # The tail must be long enough to hold all but the last marker character.
        self._keep = max(keep, len(marker) - 1)
        self._state = DemuxState.SEARCHING
        self._pending = ""
        self._reasoning: list[str] = []
        self._answer: list[str] = []

    @property
    def marker(self) -> str:
        return self._marker

    @property
    def keep(self) -> int:
        return self._keep

    @property
    def state(self) -> DemuxState:
        return self._state

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning)

    @property
    def answer(self) -> str:
        return "".join(self._answer)

    def feed(self, chunk: str) -> list[DemuxEvent]:
        """Consume one chunk and return the events it produced, in order."""
        if not chunk:
            return []

        if self._state is DemuxState.ANSWERING:
            return [self._emit_answer(chunk)]

        self._pending += chunk
        idx = self._pending.find(self._marker)
        if idx != -1:
            before = self._pending[:idx]
            after = self._pending[idx + len(self._marker):]
            self._pending = ""
            self._state = DemuxState.ANSWERING

            events: list[DemuxEvent] = []
            if before:
                events.append(self._emit_reasoning(before))
            if after:
                events.append(self._emit_answer(after))
            return events

        overflow = len(self._pending) - self._keep
        if overflow > 0:
            flushed = self._pending[:overflow]
            self._pending = self._pending[overflow:]
            return [self._emit_reasoning(flushed)]
        return []

    def close(self) -> list[DemuxEvent]:
        """Flush whatever is still pending as reasoning. Safe to call twice."""
        if not self._pending:
            return []
        remaining = self._pending
        self._pending = ""
        return [self._emit_reasoning(remaining)]

    def _emit_reasoning(self, text: str) -> DemuxEvent:
        self._reasoning.append(text)
        return DemuxEvent(Channel.REASONING, text)

    def _emit_answer(self, text: str) -> DemuxEvent:
        self._answer.append(text)
        return DemuxEvent(Channel.ANSWER, text)
