# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Conversational turn handling: output demultiplexing, turn control and events."""
