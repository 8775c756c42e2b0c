"""
Retry helper for units of work that lose a serialization race.

PostgreSQL at SERIALIZABLE aborts one of two conflicting transactions
(serialization failure, deadlock); both surface as ``OperationalError``.
The whole unit of work is re-run from the start, never resumed.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from payment_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    on_retry: Callable[[], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute ``func`` and retry on concurrency failures.

    ``on_retry`` runs after each failed attempt (typically a session
    rollback).  The last failure is re-raised once ``attempts`` is spent.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if on_retry is not None:
                on_retry()
            if attempt >= attempts - 1:
                logger.error(
                    "unit_of_work_retries_exhausted",
                    extra={"attempts": attempts, "error_type": type(exc).__name__},
                )
                raise
            delay = backoff_base * (2 ** attempt)
            logger.warning(
                "unit_of_work_retrying",
                extra={"attempt": attempt + 1, "delay_seconds": delay, "error_type": type(exc).__name__},
            )
            sleep(delay)
    raise AssertionError("unreachable")
