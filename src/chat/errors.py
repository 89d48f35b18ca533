# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations


class StorageError(Exception):
    """Raised when the session store cannot read or write a row."""


class TurnError(Exception):
    """Raised when a turn fails fatally and nothing was persisted for it."""

    def __init__(self, message: str, *, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(message)
