import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout

from shared.utils import DatabaseException

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient driver errors; DuplicateKeyError and validation failures are never retried
TRANSIENT_DB_ERRORS = (AutoReconnect, NetworkTimeout, ConnectionFailure)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): base * 2^attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_if: Callable[[Exception], bool] = lambda exc: True,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> T:
    """
    Await `operation()` up to `max_attempts` times.

    Errors for which `retry_if` returns False propagate immediately, as does the
    error of the final attempt.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt + 1 >= max_attempts or not retry_if(exc):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            if on_retry:
                on_retry(exc, attempt + 1)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt + 1, "error": str(exc)},
            )
            await asyncio.sleep(delay)
            attempt += 1


def is_transient_db_error(exc: Exception) -> bool:
    return isinstance(exc, TRANSIENT_DB_ERRORS)


async def with_database_retry(operation: Callable[[], Awaitable[T]], max_attempts: int = 3,
                              name: str = "database operation") -> T:
    """Retry transient driver errors; surface exhaustion as a DatabaseException."""
    try:
        return await retry_with_backoff(
            operation,
            max_attempts=max_attempts,
            base_delay=0.1,
            max_delay=2.0,
            retry_if=is_transient_db_error,
        )
    except TRANSIENT_DB_ERRORS as exc:
        logger.error(f"Giving up on {name}", extra={"error": str(exc)})
        raise DatabaseException(str(exc), name) from exc
