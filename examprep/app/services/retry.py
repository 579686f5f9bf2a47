"""Retry mechanism with exponential backoff for relational store operations.

Failures are classified as transient (connection exhaustion, dropped or
unreachable connections) or fatal (everything else the store raises).
Transient failures are retried with capped exponential backoff up to a fixed
number of attempts; fatal failures surface on first occurrence. Exceptions
that do not come from the store, including the domain errors raised inside a
unit of work, propagate unchanged.
"""

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.exceptions import FatalDatabaseError, TransientDatabaseError

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

# PostgreSQL SQLSTATE codes that resolve on retry
TRANSIENT_SQLSTATES = frozenset({
    "53300",  # too_many_connections
    "57P01",  # admin_shutdown (terminating connection)
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "08000",  # connection_exception
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08003",  # connection_does_not_exist
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "08006",  # connection_failure
})

TRANSIENT_MESSAGE_MARKERS = (
    "too many connections",
    "remaining connection slots are reserved",
    "concurrent connections limit exceeded",
    "terminating connection",
    "connection was closed",
    "connection is closed",
    "server closed the connection",
    "connection reset by peer",
    "could not connect",
    "connection refused",
    "unable to establish connection",
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    cause = getattr(orig, "__cause__", None)
    code = getattr(cause, "sqlstate", None)
    return str(code) if code else None


def classify_error(exc: BaseException) -> Optional[ErrorKind]:
    """Classify a failure raised by a relational store operation.

    Returns:
        ErrorKind.TRANSIENT or ErrorKind.FATAL for store failures, None for
        exceptions that do not come from the store.
    """
    if isinstance(exc, (ConnectionError, TimeoutError, PoolTimeoutError)):
        return ErrorKind.TRANSIENT

    if not isinstance(exc, SQLAlchemyError):
        return None

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return ErrorKind.TRANSIENT
        if _sqlstate(exc) in TRANSIENT_SQLSTATES:
            return ErrorKind.TRANSIENT
        if isinstance(exc.orig, (ConnectionError, TimeoutError)):
            return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_attempts: Total number of attempts, the first one included (default: 3)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 8.0)
        exponential_base: Base for exponential calculation (default: 2.0)

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        >>> policy.calculate_delay(attempt=1)
        2.0
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.db_retry_max_attempts,
            base_delay=settings.db_retry_base_delay,
            max_delay=settings.db_retry_max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the failed attempt with 0-based index ``attempt``.

        delay = min(base_delay * (exponential_base ^ attempt), max_delay)
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    name: Optional[str] = None,
) -> T:
    """Run ``operation`` and retry it on transient store failures.

    ``operation`` is called afresh for every attempt, so it must open its own
    session/transaction each time.

    Raises:
        TransientDatabaseError: transient failures on every attempt
        FatalDatabaseError: a non-transient store failure
    """
    retry_policy = policy or RetryPolicy.from_settings()
    label = name or getattr(operation, "__name__", "operation")

    for attempt in range(retry_policy.max_attempts):
        try:
            return await operation()
        except Exception as e:
            kind = classify_error(e)
            if kind is None:
                raise
            if kind is ErrorKind.FATAL:
                logger.debug(
                    f"Non-retryable database error in {label}: {type(e).__name__}: {e}"
                )
                raise FatalDatabaseError(f"{label} failed: {type(e).__name__}") from e

            if attempt + 1 >= retry_policy.max_attempts:
                logger.warning(
                    f"Max attempts ({retry_policy.max_attempts}) exceeded for {label}: "
                    f"{type(e).__name__}: {e}",
                    extra={"attempt": attempt + 1},
                )
                raise TransientDatabaseError(attempts=retry_policy.max_attempts) from e

            delay = retry_policy.calculate_delay(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{retry_policy.max_attempts} for {label} "
                f"failed with {type(e).__name__}: {e}. Retrying in {delay:.2f}s...",
                extra={"attempt": attempt + 1},
            )
            await asyncio.sleep(delay)

    raise TransientDatabaseError(attempts=retry_policy.max_attempts)


def with_retry(policy: Optional[RetryPolicy] = None) -> Callable[[F], F]:
    """Decorator form of :func:`run_with_retry` for async functions.

    Example:
        >>> @with_retry(RetryPolicy(max_attempts=3))
        ... async def load_topics(subject_id):
        ...     async with get_async_session_maker()() as session:
        ...         return await get_first_topic_ids(session, subject_id, 2)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await run_with_retry(
                lambda: func(*args, **kwargs), policy, name=func.__name__
            )

        return wrapper  # type: ignore

    return decorator
