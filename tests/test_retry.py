"""
Tests for the bounded retry combinator.
"""
import pytest

from core.exceptions import NetworkFailure, SlippageExceeded
from infra.retry import RetryPolicy, is_retryable, retry_async


class TestRetryPolicy:

    def test_fixed_delay(self):
        policy = RetryPolicy(max_attempts=3, delay_seconds=1.5)
        assert [policy.delay_for(i) for i in range(3)] == [1.5, 1.5, 1.5]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(max_attempts=5, delay_seconds=1.0, backoff=2.0, max_delay_seconds=3.0)
        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"delay_seconds": -1},
        {"backoff": 0.5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_returns_first_success(self, no_sleep):
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 2:
                raise NetworkFailure("flaky")
            return "ok"

        result = await retry_async(op, RetryPolicy(max_attempts=3, delay_seconds=1.5), sleep=no_sleep)
        assert result == "ok"
        assert len(calls) == 2
        assert no_sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self, no_sleep):
        calls = []

        async def op():
            calls.append(1)
            raise NetworkFailure(f"attempt {len(calls)}")

        with pytest.raises(NetworkFailure, match="attempt 3"):
            await retry_async(op, RetryPolicy(max_attempts=3), sleep=no_sleep)
        assert len(calls) == 3
        assert len(no_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, no_sleep):
        calls = []

        async def op():
            calls.append(1)
            raise SlippageExceeded("floor")

        with pytest.raises(SlippageExceeded):
            await retry_async(op, RetryPolicy(max_attempts=5), sleep=no_sleep)
        assert len(calls) == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_classifier(self, no_sleep):
        calls = []

        async def op():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            await retry_async(op, RetryPolicy(max_attempts=2), sleep=no_sleep,
                              classifier=lambda e: isinstance(e, KeyError))
        assert len(calls) == 2


def test_is_retryable_reads_attribute():
    assert is_retryable(NetworkFailure())
    assert not is_retryable(SlippageExceeded())
    assert not is_retryable(RuntimeError())
