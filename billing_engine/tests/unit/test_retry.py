"""Unit tests for async_retry_with_backoff."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from billing_engine.errors import BillingValidationError, TransientBillingError
from billing_engine.retry import RetryConfig, _compute_delay, async_retry_with_backoff, is_transient
from sqlalchemy.exc import OperationalError

_FAST = RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.002, jitter=False)


class TestAsyncRetryWithBackoff:
    """Only transient failures are retried."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self) -> None:
        fn = AsyncMock(return_value="ok")
        assert await async_retry_with_backoff(fn, _FAST) == "ok"
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self) -> None:
        fn = AsyncMock(side_effect=[TransientBillingError("blip"), "ok"])
        assert await async_retry_with_backoff(fn, _FAST) == "ok"
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_raises_after_exhausting_retries(self) -> None:
        fn = AsyncMock(side_effect=TransientBillingError("down"))
        with pytest.raises(TransientBillingError):
            await async_retry_with_backoff(fn, _FAST)
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self) -> None:
        fn = AsyncMock(side_effect=BillingValidationError("bad"))
        with pytest.raises(BillingValidationError):
            await async_retry_with_backoff(fn, _FAST)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self) -> None:
        fn = AsyncMock(side_effect=TimeoutError())
        with pytest.raises(TimeoutError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=0, base_delay=0.001))
        assert fn.await_count == 1


class TestTransientClassification:
    def test_operational_error_is_transient(self) -> None:
        assert is_transient(OperationalError("SELECT 1", {}, Exception("database is locked")))

    def test_connection_error_is_transient(self) -> None:
        assert is_transient(ConnectionError())

    def test_value_error_is_not(self) -> None:
        assert not is_transient(ValueError())


class TestComputeDelay:
    def test_exponential_without_jitter(self) -> None:
        config = RetryConfig(base_delay=0.5, max_delay=10.0, jitter=False)
        assert _compute_delay(0, config) == 0.5
        assert _compute_delay(2, config) == 2.0

    def test_capped_at_max_delay(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)
        assert _compute_delay(10, config) == 3.0

    def test_jitter_stays_in_band(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=True)
        for _ in range(20):
            assert 0.5 <= _compute_delay(0, config) <= 1.5
