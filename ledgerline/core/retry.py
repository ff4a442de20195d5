'''
Retry-with-backoff for Position Store calls.

One policy object describes how many attempts are made and how long to
wait between them. Whether an exception is worth retrying is decided by
classify_error(), so query fetches, optimistic dispatches, and offline
replay all agree on what counts as transient.
'''

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ledgerline.core.errors import classify_error

__all__ = ['RetryPolicy', 'retry_with_backoff']

_log = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:

    '''
    Exponential backoff schedule.

    Args:
        max_attempts (int): Total attempts including the first, at least 1.
        base_delay (float): Delay in seconds before the second attempt.
        max_delay (float): Upper bound on any single delay.
        jitter (bool): Draw each delay uniformly from [0, delay] when True.
    '''

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False

    def __post_init__(self) -> None:

        if self.max_attempts < 1:
            msg = 'RetryPolicy.max_attempts must be at least 1'
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = 'RetryPolicy delays must be non-negative'
            raise ValueError(msg)

    def delay_for(self, attempt: int) -> float:

        '''
        Return the wait after a failed attempt.

        Args:
            attempt (int): Zero-based index of the attempt that failed

        Returns:
            float: Seconds to wait before the next attempt
        '''

        delay = min(self.base_delay * 2 ** attempt, self.max_delay)
        if self.jitter:
            return random.uniform(0, delay)
        return delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = 'store call',
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:

    '''
    Await fn, retrying retryable failures according to policy.

    Non-retryable failures are raised immediately. When every attempt
    fails with a retryable error the last exception is raised.

    Args:
        fn (Callable[[], Awaitable[T]]): Zero-argument coroutine factory
        policy (RetryPolicy): Attempt count and delay schedule
        label (str): Description used in log messages
        sleep (Callable[[float], Awaitable[None]]): Sleep function, replaceable in tests

    Returns:
        T: Result of the first successful attempt
    '''

    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except Exception as exc:
            verdict = classify_error(exc)
            if not verdict.retryable:
                raise
            if attempt + 1 == policy.max_attempts:
                _log.error(
                    'All %d attempts exhausted on %s: %s',
                    policy.max_attempts, label, verdict.message,
                )
                raise
            delay = policy.delay_for(attempt)
            _log.warning(
                '%s failed on %s (attempt %d/%d), retrying in %.2fs: %s',
                verdict.kind.value, label, attempt + 1, policy.max_attempts, delay, verdict.message,
            )
            await sleep(delay)

    msg = 'retry_with_backoff exited without a result'
    raise RuntimeError(msg)
