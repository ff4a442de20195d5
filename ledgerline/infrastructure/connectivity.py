'''
Connectivity signal and reachability probe.

ConnectivityMonitor holds the current online/offline state and notifies
listeners on every transition. ReachabilityProbe drives a monitor by
periodically issuing an HTTP HEAD against a health endpoint.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

__all__ = ['ConnectivityListener', 'ConnectivityMonitor', 'ReachabilityProbe']

_log = logging.getLogger(__name__)

_HTTP_SERVER_ERROR = 500

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:

    '''
    Observable online/offline flag.

    Args:
        online (bool): Initial state
    '''

    def __init__(self, online: bool = True) -> None:

        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:

        return self._online

    def set_online(self, online: bool) -> None:

        '''
        Update the state and notify listeners if it changed.

        Args:
            online (bool): New state
        '''

        if online == self._online:
            return
        self._online = online
        _log.info('connectivity changed: %s', 'online' if online else 'offline')
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:

        '''
        Register listener for state transitions.

        Args:
            listener (ConnectivityListener): Called with the new state

        Returns:
            Callable[[], None]: Idempotent unsubscribe handle
        '''

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class ReachabilityProbe:

    '''
    Poll a health URL and report the result to a ConnectivityMonitor.

    Args:
        monitor (ConnectivityMonitor): Monitor to update
        health_url (str): URL answered by the store when reachable
        interval (float): Seconds between probes
        timeout (float): Per-probe timeout in seconds
    '''

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        health_url: str,
        *,
        interval: float = 30.0,
        timeout: float = 5.0,
    ) -> None:

        self._monitor = monitor
        self._health_url = health_url
        self._interval = interval
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> ReachabilityProbe:

        self.start()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:

        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def check(self) -> bool:

        '''
        Probe once and update the monitor.

        Returns:
            bool: True if the health URL answered below HTTP 500
        '''

        session = await self._ensure_session()
        try:
            async with session.head(self._health_url) as response:
                reachable = response.status < _HTTP_SERVER_ERROR
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            _log.debug('health probe failed: %s', exc)
            reachable = False
        self._monitor.set_online(reachable)
        return reachable

    def start(self) -> None:

        '''Start probing in the background. Calling start() twice is a no-op.'''

        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:

        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    async def close(self) -> None:

        '''Stop probing and close the HTTP session.'''

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._session:
            session = self._session
            self._session = None
            if not session.closed:
                await session.close()
