"""Tests for the bounded retry executor."""

import pytest

from livearchive.errors import ExhaustionError, TransientUpstreamError
from livearchive.retry import RETRY_ATTEMPTS, with_retry


class Flaky:
    """Fails a fixed number of times, then returns 'ok'."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientUpstreamError(f"failure {self.calls}")
        return "ok"


@pytest.mark.asyncio
async def test_first_success_is_called_once(sleeper):
    op = Flaky(0)

    assert await with_retry(op, delay=5, sleep=sleeper) == "ok"
    assert op.calls == 1
    assert sleeper.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("k", [2, 3])
async def test_success_on_attempt_k_calls_k_times(sleeper, k):
    op = Flaky(k - 1)

    assert await with_retry(op, delay=5, sleep=sleeper) == "ok"
    assert op.calls == k
    assert sleeper.calls == [5] * (k - 1)


@pytest.mark.asyncio
async def test_exhaustion_after_three_calls_references_last_error(sleeper):
    op = Flaky(10)

    with pytest.raises(ExhaustionError) as info:
        await with_retry(op, delay=5, what="List fetch", sleep=sleeper)

    assert RETRY_ATTEMPTS == 3
    assert op.calls == 3
    # No sleep after the last attempt
    assert sleeper.calls == [5, 5]
    assert info.value.attempts == 3
    assert str(info.value.last_error) == "failure 3"
    assert info.value.__cause__ is info.value.last_error
    assert "List fetch" in str(info.value)


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried(sleeper):
    calls = 0

    async def broken():
        nonlocal calls
        calls += 1
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await with_retry(broken, delay=5, sleep=sleeper)

    assert calls == 1
    assert sleeper.calls == []
