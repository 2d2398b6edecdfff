import asyncio

import pytest

from conftest import RecordingSleep
from keywording.errors import (AnalysisServiceError, MalformedResponseError,
                               RateLimitError, TransientError)
from keywording.resilience import (RetryPolicy, RetryStats, is_rate_limit_error,
                                   retry_with_backoff)


def _flaky(failures, error=TransientError):
    calls = {'count': 0}

    async def operation():
        calls['count'] += 1
        if calls['count'] <= failures:
            raise error(f"failure {calls['count']}")
        return 'ok'
    return operation, calls


def test_succeeds_on_last_attempt():
    policy = RetryPolicy(max_attempts=3)
    operation, calls = _flaky(2)
    sleep = RecordingSleep()

    result = asyncio.run(retry_with_backoff(operation, policy, sleep=sleep))

    assert result == 'ok'
    assert calls['count'] == 3
    assert sleep.delays == [2.0, 4.0]


def test_always_failing_raises_after_max_attempts():
    policy = RetryPolicy(max_attempts=3)
    operation, calls = _flaky(10, MalformedResponseError)
    stats = RetryStats()

    with pytest.raises(MalformedResponseError):
        asyncio.run(retry_with_backoff(operation, policy, sleep=RecordingSleep(), stats=stats))

    assert calls['count'] == 3
    assert stats.get_stats() == {'attempts': 3, 'retries': 2,
                                 'rate_limit_hits': 0, 'exhausted': 1}


def test_non_retryable_error_propagates_immediately():
    operation, calls = _flaky(5, AnalysisServiceError)
    sleep = RecordingSleep()

    with pytest.raises(AnalysisServiceError):
        asyncio.run(retry_with_backoff(operation, RetryPolicy(), sleep=sleep))

    assert calls['count'] == 1
    assert sleep.delays == []


def test_rate_limit_raises_delay_floor():
    operation, calls = _flaky(2, RateLimitError)
    sleep = RecordingSleep()
    stats = RetryStats()

    asyncio.run(retry_with_backoff(operation, RetryPolicy(), sleep=sleep, stats=stats))

    assert sleep.delays == [10.0, 10.0]
    assert stats.rate_limit_hits == 2


def test_compute_delay_is_capped():
    policy = RetryPolicy(base_delay=2.0, backoff_factor=2.0, max_delay=30.0)
    assert policy.compute_delay(1) == 2.0
    assert policy.compute_delay(3) == 8.0
    assert policy.compute_delay(10) == 30.0
    assert policy.compute_delay(4, rate_limited=True) == 30.0


def test_policy_from_config(pipeline_config):
    policy = RetryPolicy.from_config(pipeline_config)
    assert policy.max_attempts == 3
    assert policy.rate_limit_min_delay == 10.0


@pytest.mark.parametrize("exc,expected", [
    (RateLimitError("slow down"), True),
    (TransientError("upstream", status=429), True),
    (TransientError("Too Many Requests"), True),
    (AnalysisServiceError("quota exceeded", status=403), True),
    (TransientError("connection reset", status=503), False),
])
def test_is_rate_limit_error(exc, expected):
    assert is_rate_limit_error(exc) is expected
