# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/core/retry.py
"""
Bounded retry for store operations.

Reconcile passes never sleep: attempts run back to back and whatever still
fails is left for the next pass.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")

RetryHook = Callable[[Exception, int], None]


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    before_retry: Optional[RetryHook] = None,
    operation_name: str = "operation",
    logger: Optional[Any] = None,
    log_level: int = logging.WARNING,
) -> T:
    """
    Call `operation` until it returns, at most `max_attempts` times (never
    fewer than one). Only `exceptions` start another attempt; the last one
    is re-raised. `before_retry(error, attempt)` runs between attempts and
    may itself raise to stop the loop.

        vm = retry_operation(
            lambda: store.create(obj),
            max_attempts=2,
            exceptions=AlreadyExistsError,
            before_retry=lambda e, n: delete_stale(obj),
        )
    """
    attempts = max(1, int(max_attempts))
    attempt = 1
    while True:
        try:
            return operation()
        except exceptions as e:
            if attempt >= attempts:
                if logger:
                    logger.log(logging.ERROR, "%s gave up after %d attempt(s): %s", operation_name, attempts, e)
                raise
            if logger:
                logger.log(log_level, "%s attempt %d/%d failed: %s", operation_name, attempt, attempts, e)
            if before_retry is not None:
                before_retry(e, attempt)
            attempt += 1
