# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from typing import Literal, Optional

from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from src.config.loader import get_float_env, get_str_env

logger = logging.getLogger(__name__)

LLMType = Literal["basic", "summary"]

_llm_cache: dict[tuple[LLMType, str], BaseChatModel] = {}


def _env_for(llm_type: LLMType, key: str) -> str:
    value = get_str_env(f"{llm_type.upper()}_{key}")
    if not value and llm_type != "basic":
        value = get_str_env(f"BASIC_{key}")
    return value


def _create_llm(llm_type: LLMType, model: str) -> BaseChatModel:
    if not model:
        raise ValueError(f"No model configured for LLM type: {llm_type}")

    kwargs = {
        "model": model,
        "timeout": get_float_env("LLM_TIMEOUT_SECONDS", 300.0),
        "max_retries": 2,
    }
    base_url = _env_for(llm_type, "BASE_URL")
    if base_url:
        kwargs["base_url"] = base_url
    api_key = _env_for(llm_type, "API_KEY")
    if api_key:
        kwargs["api_key"] = api_key

    logger.info("Creating %s LLM with model %s", llm_type, model)
    return ChatOpenAI(**kwargs)


def get_llm_by_type(llm_type: LLMType, model: Optional[str] = None) -> BaseChatModel:
    """Get LLM instance by type. Returns cached instance if available.

    ``model`` overrides the configured model name for this type.
    """
    model = (model or "").strip() or _env_for(llm_type, "MODEL")
    cache_key = (llm_type, model)
    if cache_key in _llm_cache:
        return _llm_cache[cache_key]

    llm = _create_llm(llm_type, model)
    _llm_cache[cache_key] = llm
    return llm
