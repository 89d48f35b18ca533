# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass

from .loader import get_bool_env, get_float_env, get_int_env, get_str_env

DEFAULT_ANSWER_MARKER = "AI:"


@dataclass(frozen=True, slots=True)
class TurnSettings:
    """Settings for a single conversational turn."""

    answer_marker: str = DEFAULT_ANSWER_MARKER
    # Trailing characters kept while searching for the marker.
    marker_keep_chars: int = 10
    agent_timeout: float = 300.0
    history_limit: int = 200

    @classmethod
    def from_env(cls) -> "TurnSettings":
        return cls(
            answer_marker=get_str_env("ANSWER_MARKER", DEFAULT_ANSWER_MARKER) or DEFAULT_ANSWER_MARKER,
            marker_keep_chars=get_int_env("MARKER_KEEP_CHARS", 10),
            agent_timeout=get_float_env("AGENT_TIMEOUT_SECONDS", 300.0),
            history_limit=get_int_env("HISTORY_LIMIT", 200),
        )


@dataclass(frozen=True, slots=True)
class SummarizationSettings:
    """Settings for the background summarization worker pool."""

    enabled: bool = True
    workers: int = 10
    queue_size: int = 100
    batch_size: int = 1
    # Messages shorter than this (UTF-8 bytes) are never summarised.
    min_content_bytes: int = 2500

    @classmethod
    def from_env(cls) -> "SummarizationSettings":
        return cls(
            enabled=get_bool_env("SUMMARY_ENABLED", True),
            workers=max(1, get_int_env("SUMMARY_WORKERS", 10)),
            queue_size=max(1, get_int_env("SUMMARY_QUEUE_SIZE", 100)),
            batch_size=max(1, get_int_env("SUMMARY_BATCH_SIZE", 1)),
            min_content_bytes=get_int_env("SUMMARY_MIN_CONTENT_BYTES", 2500),
        )
