from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

DEFAULT_SESSION_TITLE = "新会话"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"


@dataclass(slots=True)
class SessionRecord:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    last_message_preview: Optional[str]


@dataclass(slots=True)
class MessageRecord:
    id: str
    session_id: str
    role: str
    content: str
    reasoning_trace: Optional[str]
    tool_call_results: Optional[list[dict[str, Any]]]
    summary: Optional[str]
    seq: int
    created_at: datetime

    @property
    def memory_content(self) -> str:
        """Text used when the conversation is replayed to the agent."""
        return self.summary or self.content
