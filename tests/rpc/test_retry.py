import asyncio

import pytest

from nethermind.batchscope.exceptions import (
    RpcResponseError,
    UpstreamHostError,
    UpstreamRateLimitError,
    UpstreamUnavailable,
)
from nethermind.batchscope.rpc.retry import RetryPolicy


class FlakyEndpoint:
    def __init__(self, failures: list[BaseException], result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


async def test_retries_until_success():
    endpoint = FlakyEndpoint([UpstreamHostError("502"), asyncio.TimeoutError()])

    result = await RetryPolicy(max_attempts=3, base_delay=0).run(endpoint)

    assert result == "ok"
    assert endpoint.calls == 3


async def test_raises_upstream_unavailable_after_max_attempts():
    endpoint = FlakyEndpoint([UpstreamRateLimitError("429")] * 5)

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await RetryPolicy(max_attempts=2, base_delay=0).run(endpoint)

    assert endpoint.calls == 2
    assert isinstance(exc_info.value.__cause__, UpstreamRateLimitError)


async def test_non_retryable_errors_are_raised_immediately():
    endpoint = FlakyEndpoint([RpcResponseError("execution reverted")])

    with pytest.raises(RpcResponseError):
        await RetryPolicy(max_attempts=5, base_delay=0).run(endpoint)

    assert endpoint.calls == 1


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0)

    assert [policy.backoff(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_backoff_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=4.0, jitter=0.5)

    for _ in range(50):
        assert 2.0 <= policy.backoff(0) <= 4.0


def test_backoff_honors_retry_after():
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0)

    assert policy.backoff(0, UpstreamRateLimitError("429", retry_after=4)) == 5.0
    assert policy.backoff(0, UpstreamRateLimitError("429", retry_after=600)) == 60.0
    assert policy.backoff(2, UpstreamRateLimitError("429")) == 4.0
