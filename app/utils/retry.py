"""
Retry utility for database transactions with exponential backoff.
Categorizes errors as transient (retryable) or permanent (non-retryable).
"""

import functools
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

T = TypeVar("T")

# SQLSTATE codes raised by PostgreSQL for conflicts between concurrent transactions
_TRANSIENT_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "23505",  # unique_violation: a concurrent delivery inserted the same row first
}

_FOREIGN_KEY_VIOLATION = "23503"


class TransientError(Exception):
    """Raised for transient/retryable errors (deadlocks, serialization failures, lost races)."""

    pass


class PermanentError(Exception):
    """Raised for permanent/non-retryable errors."""

    pass


def _sqlstate(exception: DBAPIError) -> str | None:
    orig = getattr(exception, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception represents a transient error that should be retried.

    Args:
        exception: The exception to check

    Returns:
        True if error is transient (retryable), False otherwise
    """
    if isinstance(exception, TransientError):
        return True

    if isinstance(exception, PermanentError):
        return False

    if isinstance(exception, DBAPIError):
        # Dropped connections
        if exception.connection_invalidated:
            return True

        if _sqlstate(exception) in _TRANSIENT_SQLSTATES:
            return True

        # Drivers without SQLSTATE (sqlite): lock contention and unique races
        message = str(exception.orig).lower() if exception.orig else str(exception).lower()
        if isinstance(exception, OperationalError) and "locked" in message:
            return True
        if isinstance(exception, IntegrityError) and "unique" in message:
            return True

    if isinstance(exception, TimeoutError | ConnectionError):
        return True

    # Default to non-retryable for unknown errors
    return False


def is_foreign_key_violation(exception: Exception) -> bool:
    """True for an insert or update that referenced a row which no longer exists."""
    if not isinstance(exception, IntegrityError):
        return False
    if _sqlstate(exception) == _FOREIGN_KEY_VIOLATION:
        return True
    message = str(exception.orig).lower() if exception.orig else str(exception).lower()
    return "foreign key" in message


def retry_on_transient_db_error(
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    multiplier: float = 2.0,
    max_delay: float = 5.0,
):
    """
    Decorator for retrying an async unit of work with exponential backoff.

    The decorated coroutine must open its own transaction, so every attempt
    starts from a clean state. Only transient errors are retried; everything
    else propagates unchanged.

    Args:
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay in seconds
        multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay in seconds

    Returns:
        Decorated coroutine function with retry logic
    """

    def retry_decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=multiplier, min=initial_delay, max=max_delay),
                retry=retry_if_exception_type(TransientError),
                reraise=True,
                before_sleep=_log_retry_attempt,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        try:
                            return await func(*args, **kwargs)
                        except Exception as e:
                            if is_transient_error(e):
                                # Wrap as TransientError to trigger retry
                                raise TransientError(f"Transient error: {str(e)}") from e
                            raise
            except TransientError as e:
                # Out of attempts: surface the original database error
                raise e.__cause__ or e

        return wrapper

    return retry_decorator


def _log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is not None:
        exception = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient database error",
            attempt=retry_state.attempt_number,
            exception=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )
