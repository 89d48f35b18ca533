# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from dotenv import load_dotenv

from .configuration import SummarizationSettings, TurnSettings
from .loader import get_bool_env, get_float_env, get_int_env, get_str_env

load_dotenv()

__all__ = [
    "SummarizationSettings",
    "TurnSettings",
    "get_bool_env",
    "get_float_env",
    "get_int_env",
    "get_str_env",
]
