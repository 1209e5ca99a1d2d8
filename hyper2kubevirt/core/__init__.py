# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/core/__init__.py
from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    Hyper2KubevirtError,
    InternalError,
    NotFoundError,
    StoreError,
    TransientNetworkError,
    ValidationError,
    wrap_internal,
)
from .logger import ContextLoggerAdapter, Log

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "ForbiddenError",
    "Hyper2KubevirtError",
    "InternalError",
    "NotFoundError",
    "StoreError",
    "TransientNetworkError",
    "ValidationError",
    "wrap_internal",
    "ContextLoggerAdapter",
    "Log",
]
