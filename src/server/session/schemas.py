from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class SessionMessage(BaseModel):
    id: str
    role: str
    content: str
    reasoning_trace: Optional[str] = None
    tool_call_results: Optional[list[dict[str, Any]]] = None
    seq: int
    created_at: datetime


class SessionSummary(BaseModel):
    id: str
    title: str
    last_message_preview: Optional[str] = None
    updated_at: datetime
    created_at: datetime


class SessionDetail(SessionSummary):
    messages: list[SessionMessage] = Field(default_factory=list)


class SessionCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, description="Optional session title.")


class SessionCreateResponse(BaseModel):
    session: SessionSummary


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class SessionUpdateRequest(BaseModel):
    title: str = Field(..., description="Manual session title override.")

    @field_validator("title")
    @classmethod
    def validate_title_length(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title must not be empty")
        if len(value) > 40:
            raise ValueError("Title must be 40 characters or fewer")
        return value


class DeleteResponse(BaseModel):
    success: bool
