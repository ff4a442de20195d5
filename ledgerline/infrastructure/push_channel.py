'''
Real-time push channel protocol and in-process implementation.

A push channel delivers PositionChanged, PositionRemoved, and
TransactionRecorded events for one portfolio scope to every handler
subscribed to it. The in-process channel fans events out on the running
event loop and is what the in-memory Position Store publishes to.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from ledgerline.core.domain.events import PushEvent

__all__ = ['InMemoryPushChannel', 'PushChannel', 'PushHandler', 'Unsubscribe']

_log = logging.getLogger(__name__)

PushHandler = Callable[[PushEvent], None]
Unsubscribe = Callable[[], Awaitable[None]]


@runtime_checkable
class PushChannel(Protocol):

    '''Source of remote change events scoped by portfolio.'''

    async def subscribe(self, portfolio_id: str, handler: PushHandler) -> Unsubscribe:

        '''
        Start delivering events for portfolio_id to handler.

        Args:
            portfolio_id (str): Portfolio scope
            handler (PushHandler): Called once per event, in publish order

        Returns:
            Unsubscribe: Coroutine function that stops delivery
        '''

        ...


class InMemoryPushChannel:

    '''
    Deliver published events to in-process subscribers.

    Events are delivered on the next loop iteration, never inside the
    publisher's call, matching how a network channel behaves.
    '''

    def __init__(self) -> None:

        self._handlers: dict[str, list[PushHandler]] = {}
        self._paused = False
        self._backlog: list[PushEvent] = []

    def subscriber_count(self, portfolio_id: str) -> int:

        return len(self._handlers.get(portfolio_id, ()))

    async def subscribe(self, portfolio_id: str, handler: PushHandler) -> Unsubscribe:

        '''
        Register handler for a portfolio.

        Args:
            portfolio_id (str): Portfolio scope
            handler (PushHandler): Event callback

        Returns:
            Unsubscribe: Coroutine function that removes handler
        '''

        self._handlers.setdefault(portfolio_id, []).append(handler)

        async def unsubscribe() -> None:
            handlers = self._handlers.get(portfolio_id, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(portfolio_id, None)

        return unsubscribe

    def publish(self, event: PushEvent) -> None:

        '''
        Queue event for delivery to the subscribers of its portfolio.

        Args:
            event (PushEvent): Remote change
        '''

        if self._paused:
            self._backlog.append(event)
            return
        asyncio.get_running_loop().call_soon(self._deliver, event)

    def pause(self) -> None:

        '''Hold published events until resume(), as a dropped connection would.'''

        self._paused = True

    def resume(self) -> None:

        self._paused = False
        backlog, self._backlog = self._backlog, []
        for event in backlog:
            self.publish(event)

    def _deliver(self, event: PushEvent) -> None:

        for handler in list(self._handlers.get(event.portfolio_id, ())):
            try:
                handler(event)
            except Exception:
                _log.exception('push handler failed for %s', type(event).__name__)
