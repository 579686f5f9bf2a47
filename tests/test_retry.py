"""Tests for retry classification and exponential backoff."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from examprep.app.exceptions import (
    FatalDatabaseError,
    NoQuestionsAvailableError,
    TransientDatabaseError,
)
from examprep.app.services.retry import (
    ErrorKind,
    RetryPolicy,
    classify_error,
    run_with_retry,
    with_retry,
)


class _PgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _operational(message="boom", sqlstate=None, invalidated=False):
    orig = _PgError(message, sqlstate) if sqlstate else Exception(message)
    return OperationalError("SELECT 1", {}, orig, connection_invalidated=invalidated)


class TestRetryPolicy:
    def test_default_values(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 8.0
        assert policy.exponential_base == 2.0

    def test_calculate_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=8.0)

        assert policy.calculate_delay(0) == 1.0
        assert policy.calculate_delay(1) == 2.0
        assert policy.calculate_delay(2) == 4.0

    def test_calculate_delay_capped_at_max(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=8.0)
        assert policy.calculate_delay(10) == 8.0

    def test_from_settings(self):
        policy = RetryPolicy.from_settings()
        assert policy.max_attempts == 3


class TestClassifyError:
    @pytest.mark.parametrize("sqlstate", ["53300", "57P01", "08001", "08006"])
    def test_transient_sqlstates(self, sqlstate):
        assert classify_error(_operational(sqlstate=sqlstate)) is ErrorKind.TRANSIENT

    @pytest.mark.parametrize(
        "message",
        [
            "FATAL: too many connections for role",
            "terminating connection due to administrator command",
            "could not connect to server: Connection refused",
            "concurrent connections limit exceeded",
        ],
    )
    def test_transient_messages(self, message):
        assert classify_error(_operational(message)) is ErrorKind.TRANSIENT

    def test_invalidated_connection(self):
        assert classify_error(_operational(invalidated=True)) is ErrorKind.TRANSIENT

    def test_pool_timeout_and_network_errors(self):
        assert classify_error(PoolTimeoutError("QueuePool limit")) is ErrorKind.TRANSIENT
        assert classify_error(ConnectionResetError()) is ErrorKind.TRANSIENT
        assert classify_error(TimeoutError()) is ErrorKind.TRANSIENT

    def test_fatal_store_errors(self):
        integrity = IntegrityError("INSERT", {}, Exception("duplicate key value"))
        syntax = ProgrammingError("SELEC", {}, _PgError("syntax error", "42601"))

        assert classify_error(integrity) is ErrorKind.FATAL
        assert classify_error(syntax) is ErrorKind.FATAL

    def test_non_store_errors_unclassified(self):
        assert classify_error(ValueError("bad")) is None
        assert classify_error(NoQuestionsAvailableError(1)) is None


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        operation = AsyncMock(return_value="ok")

        assert await run_with_retry(operation, RetryPolicy(base_delay=0)) == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        operation = AsyncMock(
            side_effect=[_operational(invalidated=True), _operational(invalidated=True), "ok"]
        )

        result = await run_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=0))

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self):
        last = _operational("too many connections")
        operation = AsyncMock(side_effect=last)

        with pytest.raises(TransientDatabaseError) as exc_info:
            await run_with_retry(operation, RetryPolicy(max_attempts=3, base_delay=0))

        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 503
        assert exc_info.value.__cause__ is last
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_fatal_not_retried(self):
        operation = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))

        with pytest.raises(FatalDatabaseError) as exc_info:
            await run_with_retry(operation, RetryPolicy(base_delay=0))

        assert exc_info.value.status_code == 500
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_domain_errors_propagate_unchanged(self):
        error = NoQuestionsAvailableError(1)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(NoQuestionsAvailableError) as exc_info:
            await run_with_retry(operation, RetryPolicy(base_delay=0))

        assert exc_info.value is error
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_exponential_backoff_delay(self):
        sleep_calls = []

        async def mock_sleep(duration):
            sleep_calls.append(duration)

        operation = AsyncMock(side_effect=_operational(invalidated=True))

        with patch("examprep.app.services.retry.asyncio.sleep", new=mock_sleep):
            with pytest.raises(TransientDatabaseError):
                await run_with_retry(
                    operation, RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=4.0)
                )

        assert sleep_calls == [1.0, 2.0, 4.0, 4.0]


class TestWithRetryDecorator:
    @pytest.mark.asyncio
    async def test_decorated_function_is_retried(self):
        calls = []

        @with_retry(RetryPolicy(max_attempts=2, base_delay=0))
        async def load(value):
            calls.append(value)
            if len(calls) == 1:
                raise ConnectionRefusedError()
            return value * 2

        assert await load(21) == 42
        assert calls == [21, 21]
        assert load.__name__ == "load"
