"""Tests for database retry functionality."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from api.db_retry import (
    DatabaseRetryableError,
    execute_with_retry,
    is_retryable_database_error,
    with_db_retry,
)
from api.errors import DatabaseUnavailableError


class TestIsRetryableDatabaseError:
    """Tests for is_retryable_database_error function."""

    def test_database_is_locked_message(self):
        exc = sqlite3.OperationalError("database is locked")
        assert is_retryable_database_error(exc) is True

    def test_database_table_is_locked_message(self):
        exc = sqlite3.OperationalError("database table is locked")
        assert is_retryable_database_error(exc) is True

    def test_sqlite_busy_message(self):
        exc = Exception("SQLITE_BUSY: some other text")
        assert is_retryable_database_error(exc) is True

    def test_case_insensitive(self):
        exc = Exception("DATABASE IS LOCKED")
        assert is_retryable_database_error(exc) is True

    def test_postgres_deadlock(self):
        exc = Exception("deadlock detected")
        assert is_retryable_database_error(exc) is True

    def test_postgres_sqlstate(self):
        exc = Exception("serialization failure")
        exc.sqlstate = "40001"
        assert is_retryable_database_error(exc) is True

    def test_wrapped_cause(self):
        """The databases library wraps driver errors; the cause is inspected too."""
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer) is True

    def test_other_sqlite_error(self):
        exc = sqlite3.OperationalError("no such table: users")
        assert is_retryable_database_error(exc) is False

    def test_unique_violation_is_not_retryable(self):
        exc = sqlite3.IntegrityError("UNIQUE constraint failed: videos.slug")
        assert is_retryable_database_error(exc) is False


class TestExecuteWithRetry:
    """Tests for execute_with_retry function."""

    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        mock_func = AsyncMock(return_value="success")

        result = await execute_with_retry(mock_func)

        assert result == "success"
        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_database_locked_then_succeed(self):
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "success",
            ]
        )

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            result = await execute_with_retry(mock_func, max_retries=3, base_delay=0.01)

        assert result == "success"
        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_exhaust_retries_raises_retryable_error(self):
        mock_func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError) as exc_info:
                await execute_with_retry(mock_func, max_retries=2, base_delay=0.01)

        assert "3 attempts" in str(exc_info.value)  # max_retries + 1
        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        mock_func = AsyncMock(side_effect=ValueError("some other error"))

        with pytest.raises(ValueError, match="some other error"):
            await execute_with_retry(mock_func, max_retries=5)

        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "success",
            ]
        )
        sleep_mock = AsyncMock()

        with patch("api.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, max_retries=3, base_delay=0.1, max_delay=2.0)

        # With random() at 0.5 the jitter is zero
        assert sleep_mock.call_count == 2
        assert sleep_mock.call_args_list[0][0][0] == pytest.approx(0.1, rel=0.01)
        assert sleep_mock.call_args_list[1][0][0] == pytest.approx(0.2, rel=0.01)

    @pytest.mark.asyncio
    async def test_max_delay_cap(self):
        mock_func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked")] * 4 + ["success"])
        sleep_mock = AsyncMock()

        with patch("api.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, max_retries=5, base_delay=1.0, max_delay=2.0)

        assert sleep_mock.call_count == 4
        assert sleep_mock.call_args_list[2][0][0] == pytest.approx(2.0, rel=0.01)
        assert sleep_mock.call_args_list[3][0][0] == pytest.approx(2.0, rel=0.01)

    @pytest.mark.asyncio
    async def test_passes_args_and_kwargs(self):
        mock_func = AsyncMock(return_value="result")

        result = await execute_with_retry(mock_func, "arg1", "arg2", kwarg1="value1")

        assert result == "result"
        mock_func.assert_called_once_with("arg1", "arg2", kwarg1="value1")


class TestWithDbRetryDecorator:
    """Tests for with_db_retry decorator."""

    @pytest.mark.asyncio
    async def test_decorator_retry_and_succeed(self):
        call_count = 0

        @with_db_retry(max_retries=3, base_delay=0.01)
        async def my_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise sqlite3.OperationalError("database is locked")
            return "success_after_retry"

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            result = await my_func()

        assert result == "success_after_retry"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_decorator_exhausts_retries(self):
        @with_db_retry(max_retries=2, base_delay=0.01)
        async def my_func():
            raise sqlite3.OperationalError("database is locked")

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError):
                await my_func()

    def test_decorator_preserves_function_name(self):
        @with_db_retry()
        async def original_function_name():
            pass

        assert original_function_name.__name__ == "original_function_name"


class TestDatabaseErrorResponses:
    """Database failures surface as 503 with a Retry-After hint."""

    @pytest.mark.asyncio
    async def test_public_api_returns_503_when_retries_exhausted(self):
        from httpx import ASGITransport, AsyncClient

        from api.public import app

        with patch(
            "api.catalog.fetch_all_with_retry",
            side_effect=DatabaseRetryableError("Database locked"),
        ):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/api/videos")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert "database" in response.json()["detail"].lower()

    @pytest.mark.asyncio
    async def test_public_api_returns_503_without_database(self):
        from httpx import ASGITransport, AsyncClient

        from api.public import app

        with patch(
            "api.catalog.fetch_all_with_retry",
            side_effect=DatabaseUnavailableError("No database configured"),
        ):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/api/categories")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"
        assert response.json()["detail"] == "Database unavailable"
