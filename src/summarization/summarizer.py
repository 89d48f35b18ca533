# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

logger = logging.getLogger(__name__)

_ROLE_NAMES = {
    "user": "用户",
    "assistant": "助手",
    "system": "系统",
}


class Summarizer(Protocol):
    async def summarize(self, role: str, content: str) -> str: ...


class MessageSummarizer:
    """Compresses one long message into a short summary with a chat model."""

    def __init__(self, llm: BaseChatModel) -> None:
        self._llm = llm

    async def summarize(self, role: str, content: str) -> str:
        prompt = _build_prompt(role, content)
        ai_message = await self._llm.ainvoke([HumanMessage(content=prompt)])
        summary = ai_message.content.strip() if isinstance(ai_message.content, str) else ""
        if not summary:
            raise ValueError("LLM returned an empty summary")
        return summary


def _build_prompt(role: str, content: str) -> str:
    speaker = _ROLE_NAMES.get(role, role)
    return (
        f"下面是一段对话中{speaker}的一条消息，请将其压缩为一段简洁的摘要。\n"
        "要求：\n"
        "1. 保留关键事实、数据、结论和待办事项；\n"
        "2. 删除寒暄、重复和推导细节；\n"
        "3. 使用与原文相同的语言，不要添加原文没有的信息；\n"
        "4. 直接输出摘要，不要任何前缀。\n\n"
        f"消息内容：\n{content}\n\n"
        "请输出摘要："
    )
