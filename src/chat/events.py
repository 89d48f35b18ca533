# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    REASONING_CHUNK = "reasoning_chunk"
    ANSWER_CHUNK = "answer_chunk"
    TOOL_CALL_RESULT = "tool_call_result"
    ERROR = "error"
    DONE = "done"


class EventSink(Protocol):
    """The only channel back to the caller. Must tolerate repeated calls."""

    def send_event(self, kind: EventKind, payload: dict[str, Any]) -> None: ...


def make_event(event_type: str, data: dict[str, Any]) -> str:
    try:
        json_data = json.dumps(data, ensure_ascii=False)
        return f"event: {event_type}\ndata: {json_data}\n\n"
    except (TypeError, ValueError) as e:
        logger.error("Error serializing event data: %s", e)
        error_data = json.dumps({"error": "Serialization failed"}, ensure_ascii=False)
        return f"event: error\ndata: {error_data}\n\n"


class QueueEventSink:
    """Buffers events for an SSE generator running in another task.

    The turn keeps writing after the reader has gone away (client disconnect);
    those events are simply never read.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send_event(self, kind: EventKind, payload: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Dropping %s event for session %s after done", kind.value, self._session_id)
            return
        data = {"session_id": self._session_id, **payload}
        self._queue.put_nowait(make_event(kind.value, data))
        if kind is EventKind.DONE:
            self._closed = True
            self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the terminal event has been delivered."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame
