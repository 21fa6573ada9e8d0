"""
Bounded retries with exponential backoff and full jitter for transient
database failures.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from farmbook.config import settings
from farmbook.exceptions import PersistenceError
from farmbook.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def to_persistence_error(exc: SQLAlchemyError, operation: str) -> PersistenceError:
    """Wrap a SQLAlchemy error, flagging connection-level failures as transient."""
    transient = isinstance(exc, (OperationalError, InterfaceError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    return PersistenceError(f"{operation}: {exc}", transient=transient)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Full-jitter delay before retry number `attempt` (0-based)."""
    return random.uniform(0, min(max_delay, base_delay * (2**attempt)))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
) -> T:
    """
    Await `operation`, retrying while it raises a transient PersistenceError.

    Non-transient errors propagate immediately. After the last attempt the
    final error propagates.
    """
    attempts = attempts or settings.persistence_retry_attempts
    base_delay = settings.persistence_retry_base_delay if base_delay is None else base_delay
    max_delay = settings.persistence_retry_max_delay if max_delay is None else max_delay

    for attempt in range(attempts):
        try:
            return await operation()
        except PersistenceError as exc:
            if not exc.transient or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "transient_persistence_failure_retrying",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=attempts,
                delay_seconds=round(delay, 3),
                error=exc.message,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
