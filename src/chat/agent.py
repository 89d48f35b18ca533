# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, Sequence

from langchain_core.exceptions import OutputParserException
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)

from src.config.configuration import DEFAULT_ANSWER_MARKER
from src.server.session.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, MessageRecord

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], None]
ToolSink = Callable[[str, list[str]], None]


class ChatAgent(Protocol):
    """Agent collaborator driven by the turn controller.

    ``token_sink`` is called for every raw text chunk, in order, while ``run``
    is in progress. ``run`` returns the final answer, which the turn uses when
    nothing was streamed through the sink. It raises
    ``OutputParserException`` when the output carried no answer marker, and
    lets ``asyncio.CancelledError`` propagate when it is cancelled.
    """

    async def run(
        self,
        query: str,
        token_sink: TokenSink,
        *,
        history: Sequence[MessageRecord] = (),
        tool_sink: Optional[ToolSink] = None,
    ) -> str: ...


def build_system_prompt(marker: str = DEFAULT_ANSWER_MARKER) -> str:
    return (
        "你是一个乐于助人的智能助手。回答问题之前，先逐步写出你的思考过程。\n"
        "思考完成后，另起一行，以固定前缀输出最终答案，格式如下：\n\n"
        "<你的思考过程>\n"
        f"{marker} <给用户的最终答案>\n\n"
        f"前缀 “{marker}” 在整个回复中只能出现一次，且必须位于最终答案之前。"
    )


def history_to_messages(history: Sequence[MessageRecord]) -> list[BaseMessage]:
    """Rebuild conversation memory, preferring a message's summary over its content."""
    messages: list[BaseMessage] = []
    for record in history:
        content = record.memory_content
        if record.role == ROLE_USER:
            messages.append(HumanMessage(content=content))
        elif record.role == ROLE_ASSISTANT:
            messages.append(AIMessage(content=content))
        elif record.role == ROLE_SYSTEM:
            messages.append(SystemMessage(content=content))
    return messages


class LLMChatAgent:
    """Conversational agent over a streaming LangChain chat model."""

    def __init__(self, llm: BaseChatModel, *, marker: str = DEFAULT_ANSWER_MARKER) -> None:
        self._llm = llm
        self._marker = marker

    async def run(
        self,
        query: str,
        token_sink: TokenSink,
        *,
        history: Sequence[MessageRecord] = (),
        tool_sink: Optional[ToolSink] = None,
    ) -> str:
        messages: list[BaseMessage] = [SystemMessage(content=build_system_prompt(self._marker))]
        messages.extend(history_to_messages(history))
        messages.append(HumanMessage(content=query))

        parts: list[str] = []
        async for chunk in self._llm.astream(messages):
            text = _chunk_text(chunk.content)
            if not text:
                continue
            parts.append(text)
            token_sink(text)

        output = "".join(parts)
        _, found, answer = output.partition(self._marker)
        if not found:
            logger.warning("Agent output is missing the %r prefix", self._marker)
            raise OutputParserException(
                f"Could not parse LLM output: {output}",
                llm_output=output,
            )
        return answer.strip()


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "".join(parts)
    return ""
