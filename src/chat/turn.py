# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Run one conversational turn: stream, demultiplex, persist, schedule summary.

A turn uses two cancellation scopes. The agent call runs in its own task (the
work scope); cancelling the caller's task cancels it. Persistence runs in a
second task that is only ever awaited through ``asyncio.shield``, so a client
disconnect can stop token forwarding but never the save.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from langchain_core.exceptions import OutputParserException

from src.config.configuration import TurnSettings
from src.server.session.models import ROLE_ASSISTANT, ROLE_USER, MessageRecord
from src.server.session.store import SQLiteSessionStore

from .agent import ChatAgent
from .demux import Channel, DemuxEvent, StreamDemultiplexer
from .errors import TurnError
from .events import EventKind, EventSink

logger = logging.getLogger(__name__)

ERROR_CALL_AGENT = "error while calling agent"
ERROR_SAVE_CONVERSATION = "failed to save conversation"

_CHANNEL_EVENTS = {
    Channel.REASONING: EventKind.REASONING_CHUNK,
    Channel.ANSWER: EventKind.ANSWER_CHUNK,
}


class SummaryTaskRegistry(Protocol):
    def register_summary_task(self, message_ids: Sequence[str]) -> bool: ...


@dataclass(slots=True)
class Turn:
    session_id: str
    query: str
    demux: StreamDemultiplexer
    tool_call_results: list[dict[str, Any]] = field(default_factory=list)
    canceled: bool = False
    partial: bool = False


@dataclass(frozen=True, slots=True)
class TurnResult:
    user_message_id: str
    assistant_message_id: Optional[str]
    answer: str
    reasoning: str
    partial: bool = False
    canceled: bool = False

    @property
    def message_ids(self) -> list[str]:
        ids = [self.user_message_id]
        if self.assistant_message_id:
            ids.append(self.assistant_message_id)
        return ids


class TurnController:
    def __init__(
        self,
        store: SQLiteSessionStore,
        agent: ChatAgent,
        summaries: Optional[SummaryTaskRegistry] = None,
        *,
        settings: Optional[TurnSettings] = None,
    ) -> None:
        self._store = store
        self._agent = agent
        self._summaries = summaries
        self._settings = settings or TurnSettings()

    async def run_turn(self, session_id: str, query: str, sink: EventSink) -> TurnResult:
        """Run the turn to completion and return what was persisted.

        Raises ``TurnError`` on a fatal failure (after emitting ``error`` and
        ``done``). If the calling task was cancelled, the partial turn is still
        persisted and ``CancelledError`` is re-raised afterwards.
        """
        turn = Turn(
            session_id=session_id,
            query=query,
            demux=StreamDemultiplexer(self._settings.answer_marker, self._settings.marker_keep_chars),
        )
        answer = await self._run_work_scope(turn, sink)

        try:
            user_id, assistant_id = await self._run_persistence_scope(turn, answer)
        except Exception as exc:
            logger.exception("Failed to save conversation for session %s", session_id)
            self._fail(sink, ERROR_SAVE_CONVERSATION)
            raise TurnError(ERROR_SAVE_CONVERSATION, session_id=session_id) from exc

        sink.send_event(EventKind.DONE, {})

        result = TurnResult(
            user_message_id=user_id,
            assistant_message_id=assistant_id,
            answer=answer,
            reasoning=turn.demux.reasoning,
            partial=turn.partial,
            canceled=turn.canceled,
        )
        self._register_summary(result)

        current = asyncio.current_task()
        if turn.canceled and current is not None and current.cancelling():
            raise asyncio.CancelledError()
        return result

    async def _run_work_scope(self, turn: Turn, sink: EventSink) -> str:
        def token_sink(chunk: str) -> None:
            self._forward(sink, turn.demux.feed(chunk))

        def tool_sink(name: str, results: list[str]) -> None:
            payload = {"name": name, "result": list(results)}
            turn.tool_call_results.append(payload)
            sink.send_event(EventKind.TOOL_CALL_RESULT, payload)

        fallback_answer = ""
        try:
            history = await self._store.get_history(turn.session_id, limit=self._settings.history_limit)
            work = asyncio.create_task(self._call_agent(turn.query, token_sink, tool_sink, history))
            fallback_answer = await work or ""
        except OutputParserException as exc:
            logger.warning("Failed to parse agent output for session %s, missing %r", turn.session_id, turn.demux.marker)
            turn.partial = True
            fallback_answer = exc.llm_output or ""
        except asyncio.CancelledError:
            logger.warning("Turn for session %s canceled, keeping partial answer", turn.session_id)
            turn.canceled = True
            turn.partial = True
        except Exception as exc:
            logger.exception("Error while calling agent for session %s", turn.session_id)
            self._fail(sink, ERROR_CALL_AGENT)
            raise TurnError(ERROR_CALL_AGENT, session_id=turn.session_id) from exc

        self._forward(sink, turn.demux.close())

        answer = turn.demux.answer
        if not answer and fallback_answer:
            answer = fallback_answer
            sink.send_event(EventKind.ANSWER_CHUNK, {"content": answer})
        return answer

    async def _call_agent(self, query, token_sink, tool_sink, history: list[MessageRecord]) -> str:
        return await asyncio.wait_for(
            self._agent.run(query, token_sink, history=history, tool_sink=tool_sink),
            timeout=self._settings.agent_timeout,
        )

    async def _run_persistence_scope(self, turn: Turn, answer: str) -> tuple[str, Optional[str]]:
        persist = asyncio.create_task(self._persist(turn, answer))
        while True:
            try:
                return await asyncio.shield(persist)
            except asyncio.CancelledError:
                if persist.cancelled():
                    raise
                # The caller went away mid-save; the save itself keeps going.
                turn.canceled = True

    async def _persist(self, turn: Turn, answer: str) -> tuple[str, Optional[str]]:
        user = await self._store.append_message(session_id=turn.session_id, role=ROLE_USER, content=turn.query)
        if not answer:
            logger.info("No answer produced for session %s; saved user message only", turn.session_id)
            return user.id, None

        assistant = await self._store.append_message(
            session_id=turn.session_id,
            role=ROLE_ASSISTANT,
            content=answer,
        )
        reasoning = turn.demux.reasoning
        if reasoning:
            await self._store.update_message(assistant.id, "reasoning_trace", reasoning)
        if turn.tool_call_results:
            await self._store.update_message(assistant.id, "tool_call_results", turn.tool_call_results)
        return user.id, assistant.id

    def _register_summary(self, result: TurnResult) -> None:
        if self._summaries is None:
            logger.debug("Summarization disabled; skipping summary task for %s", result.message_ids)
            return
        self._summaries.register_summary_task(result.message_ids)

    @staticmethod
    def _forward(sink: EventSink, events: list[DemuxEvent]) -> None:
        for event in events:
            sink.send_event(_CHANNEL_EVENTS[event.channel], {"content": event.text})

    @staticmethod
    def _fail(sink: EventSink, message: str) -> None:
        sink.send_event(EventKind.ERROR, {"error": message})
        sink.send_event(EventKind.DONE, {})
