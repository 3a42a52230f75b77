"""Tests for execute_with_retry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.services.retry import execute_with_retry


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success_without_retrying(self):
        operation = AsyncMock(return_value="ok")
        assert await execute_with_retry(operation, initial_delay_ms=0) == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_fail_once_then_succeed(self):
        operation = AsyncMock(side_effect=[RuntimeError("flaky"), "ok"])
        hook = MagicMock()

        result = await execute_with_retry(operation, initial_delay_ms=1, on_retry=hook)

        assert result == "ok"
        assert operation.await_count == 2
        hook.assert_called_once()
        attempt, error, delay = hook.call_args.args
        assert attempt == 1
        assert str(error) == "flaky"
        assert delay == 1

    @pytest.mark.asyncio
    async def test_reraises_last_error_after_max_attempts(self):
        errors = [RuntimeError("one"), RuntimeError("two"), RuntimeError("three")]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(RuntimeError) as exc_info:
            await execute_with_retry(operation, initial_delay_ms=0)

        assert exc_info.value is errors[-1]
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_delays_grow_by_backoff_factor(self):
        operation = AsyncMock(side_effect=[ValueError(), ValueError(), ValueError(), "ok"])
        delays: list[float] = []

        await execute_with_retry(
            operation,
            max_attempts=4,
            initial_delay_ms=1,
            backoff_factor=3,
            on_retry=lambda attempt, error, delay: delays.append(delay),
        )

        assert delays == [1, 3, 9]

    @pytest.mark.asyncio
    async def test_hook_errors_are_ignored(self):
        operation = AsyncMock(side_effect=[RuntimeError("flaky"), "ok"])
        hook = MagicMock(side_effect=RuntimeError("hook broke"))

        assert await execute_with_retry(operation, initial_delay_ms=0, on_retry=hook) == "ok"

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self):
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await execute_with_retry(operation, initial_delay_ms=0)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            await execute_with_retry(AsyncMock(), max_attempts=0)
