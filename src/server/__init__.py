# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import TYPE_CHECKING

__all__ = ["app", "lifespan"]

if TYPE_CHECKING:  # pragma: no cover
    from .app import app as _app
    from .app import lifespan as _lifespan


def __getattr__(name: str):  # pragma: no cover - lazy import keeps FastAPI app creation explicit
    if name in __all__:
        from . import app as app_module

        return getattr(app_module, name)
    raise AttributeError(name)
