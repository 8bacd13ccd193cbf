from unittest.mock import AsyncMock, patch

import pytest

from healer_core.exceptions import CommandTimeout, HostKeyVerificationError, RemoteConnectionError
from healer_core.retry import RetryPolicy, calculate_backoff, retry_async

FAST = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def test_backoff_grows_and_caps():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
    assert [calculate_backoff(n, policy) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_within_a_quarter():
    policy = RetryPolicy(base_delay=4.0, max_delay=10.0)
    for _ in range(50):
        assert 3.0 <= calculate_backoff(0, policy) <= 5.0


def test_policy_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == 3
    assert policy.base_delay == 0.0


@pytest.mark.asyncio
async def test_retryable_error_retried_until_success():
    fn = AsyncMock(side_effect=[RemoteConnectionError("reset"), CommandTimeout("slow", 1.0), "ok"])
    assert await retry_async(fn, FAST, "lookup") == "ok"
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_budget_exhaustion_raises_last_error():
    fn = AsyncMock(side_effect=RemoteConnectionError("reset"))
    with pytest.raises(RemoteConnectionError):
        await retry_async(fn, FAST, "lookup")
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_non_retryable_error_not_retried():
    fn = AsyncMock(side_effect=HostKeyVerificationError("mismatch"))
    with pytest.raises(HostKeyVerificationError):
        await retry_async(fn, FAST, "connect")
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_foreign_errors_pass_through():
    fn = AsyncMock(side_effect=KeyError("boom"))
    with pytest.raises(KeyError):
        await retry_async(fn, FAST, "lookup")
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_sleeps_between_attempts():
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=False)
    fn = AsyncMock(side_effect=[RemoteConnectionError("a"), RemoteConnectionError("b"), "ok"])
    with patch("healer_core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        await retry_async(fn, policy, "lookup")
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
