'''
Coalescing scheduler for debounced actions.

Maps a key to a cancellable asyncio.TimerHandle. Scheduling a key that
is already armed cancels the previous handle and re-arms it, so a burst
of requests fires the action exactly once after the quiet period.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

__all__ = ['CoalescingScheduler']

_log = logging.getLogger(__name__)


class CoalescingScheduler:

    '''
    Debounce actions per key on the running event loop.

    Args:
        delay (float): Quiet period in seconds before an armed action fires
    '''

    def __init__(self, delay: float) -> None:

        if delay < 0:
            msg = 'CoalescingScheduler.delay must be non-negative'
            raise ValueError(msg)

        self._delay = delay
        self._handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def delay(self) -> float:

        return self._delay

    def schedule(self, key: str, action: Callable[[], None], delay: float | None = None) -> None:

        '''
        Arm action for key, replacing any action already armed for it.

        Args:
            key (str): Canonical coalescing key
            action (Callable[[], None]): Callback run once after the quiet period
            delay (float | None): Override of the default quiet period
        '''

        loop = asyncio.get_running_loop()

        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()

        wait = self._delay if delay is None else delay
        self._handles[key] = loop.call_later(wait, self._fire, key, action)

    def cancel(self, key: str) -> bool:

        '''
        Cancel the action armed for key.

        Args:
            key (str): Canonical coalescing key

        Returns:
            bool: True if an action was armed and is now cancelled
        '''

        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:

        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self) -> list[str]:

        '''Return the keys with an armed action.'''

        return list(self._handles)

    def _fire(self, key: str, action: Callable[[], None]) -> None:

        self._handles.pop(key, None)
        _log.debug('coalesced action fired for %s', key)
        action()
