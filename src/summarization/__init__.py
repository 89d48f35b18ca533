# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Background summarization of long chat messages."""

from .scheduler import SummaryScheduler, SummaryTask
from .summarizer import MessageSummarizer

__all__ = ["MessageSummarizer", "SummaryScheduler", "SummaryTask"]
