'''
Tests for ledgerline.core.retry.
'''

from __future__ import annotations

import pytest

from ledgerline.core.errors import NetworkFailureError, NotFoundError, RateLimitError
from ledgerline.core.retry import RetryPolicy, retry_with_backoff


class _Recorder:

    def __init__(self) -> None:

        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:

        self.delays.append(delay)


def _flaky(*outcomes: object):

    remaining = list(outcomes)
    calls: list[int] = []

    async def call() -> object:
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    call.calls = calls  # type: ignore[attr-defined]
    return call


class TestRetryPolicy:

    def test_defaults(self) -> None:

        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self) -> None:

        assert RetryPolicy().delay_for(10) == 30.0

    def test_jitter_stays_within_delay(self) -> None:

        policy = RetryPolicy(jitter=True)
        ceiling = RetryPolicy()
        for attempt in range(6):
            assert 0 <= policy.delay_for(attempt) <= ceiling.delay_for(attempt)

    def test_invalid_attempts(self) -> None:

        with pytest.raises(ValueError, match='max_attempts'):
            RetryPolicy(max_attempts=0)

    def test_invalid_delay(self) -> None:

        with pytest.raises(ValueError, match='non-negative'):
            RetryPolicy(base_delay=-1)


@pytest.mark.asyncio
async def test_success_after_transient_failures() -> None:

    recorder = _Recorder()
    call = _flaky(NetworkFailureError('down'), RateLimitError('slow'), 'ok')

    result = await retry_with_backoff(call, RetryPolicy(), sleep=recorder.sleep)

    assert result == 'ok'
    assert recorder.delays == [1.0, 2.0]
    assert len(call.calls) == 3


@pytest.mark.asyncio
async def test_non_retryable_raised_immediately() -> None:

    recorder = _Recorder()
    call = _flaky(NotFoundError('gone'), 'ok')

    with pytest.raises(NotFoundError):
        await retry_with_backoff(call, RetryPolicy(), sleep=recorder.sleep)

    assert recorder.delays == []
    assert len(call.calls) == 1


@pytest.mark.asyncio
async def test_exhausted_raises_last_error() -> None:

    recorder = _Recorder()
    last = NetworkFailureError('third')
    call = _flaky(NetworkFailureError('first'), NetworkFailureError('second'), last)

    with pytest.raises(NetworkFailureError) as info:
        await retry_with_backoff(call, RetryPolicy(), sleep=recorder.sleep)

    assert info.value is last
    assert recorder.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_unknown_exceptions_are_not_retried() -> None:

    recorder = _Recorder()
    call = _flaky(KeyError('bug'), 'ok')

    with pytest.raises(KeyError):
        await retry_with_backoff(call, RetryPolicy(), sleep=recorder.sleep)

    assert recorder.delays == []
