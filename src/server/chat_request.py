# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AgentConfig(BaseModel):
    model: Optional[str] = Field(None, description="Chat model to use instead of the configured default.")

    @field_validator("model")
    @classmethod
    def validate_model(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ChatRequest(BaseModel):
    session_id: str = Field(..., description="Session the turn belongs to.")
    query: str = Field(..., description="The user's message for this turn.")
    agent_config: Optional[AgentConfig] = Field(None, description="Per-request agent overrides.")

    @field_validator("query")
    @classmethod
    def validate_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Query must not be empty")
        return value
