'''
Keyed cache of position data shared by every reader in the process.

Each key maps to a CacheEntry that owns the cached value, its
lifecycle status, and the callbacks of everyone subscribed to it.
The cache serves stale values immediately while refreshing them in the
background, runs at most one fetch per key at a time, debounces
invalidation bursts into a single refetch, and evicts entries nobody
has subscribed to for gc_time seconds.

Cache mutations are synchronous. The only suspension points are the
fetchers themselves, so a reader never observes a half-applied write.
'''

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeAlias

from ledgerline.core.domain.enums import EntryStatus
from ledgerline.core.errors import LedgerError, as_ledger_error
from ledgerline.core.query_keys import QueryKey, canonical, matches
from ledgerline.core.retry import RetryPolicy, retry_with_backoff
from ledgerline.core.scheduler import CoalescingScheduler

if TYPE_CHECKING:
    from ledgerline.infrastructure.settings import Settings

__all__ = ['CacheEntry', 'CacheSnapshot', 'Fetcher', 'Listener', 'QueryCache']

_log = logging.getLogger(__name__)

Fetcher: TypeAlias = Callable[[], Awaitable[Any]]
Listener: TypeAlias = Callable[['CacheEntry'], None]


@dataclass(eq=False)
class CacheEntry:

    '''
    Cached value and lifecycle state for one key.

    Args:
        key (QueryKey): Cache key.
        data (Any): Cached value, meaningful only when has_data is True.
        has_data (bool): Whether a value has ever been stored.
        status (EntryStatus): Lifecycle state.
        last_fetched_at (float | None): Clock reading when the last fetch completed.
        updated_at (float | None): Clock reading when data last changed.
        error (LedgerError | None): Failure of the most recent fetch.
        subscribers (list[Listener]): Callbacks invoked on every state change.
        fetcher (Fetcher | None): Registered loader used for refetches.
        stale_time (float): Seconds after updated_at before the value is stale.
        gc_time (float): Seconds without subscribers before eviction.
        generation (int): Incremented on every invalidation.
    '''

    key: QueryKey
    data: Any = None
    has_data: bool = False
    status: EntryStatus = EntryStatus.IDLE
    last_fetched_at: float | None = None
    updated_at: float | None = None
    error: LedgerError | None = None
    subscribers: list[Listener] = field(default_factory=list)
    fetcher: Fetcher | None = None
    stale_time: float = 300.0
    gc_time: float = 600.0
    generation: int = 0
    gc_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    def is_stale(self, now: float) -> bool:

        '''
        Return True if the entry should be refreshed before being considered current.

        Args:
            now (float): Current clock reading

        Returns:
            bool: True without data, after invalidation, or once stale_time has elapsed
        '''

        if not self.has_data or self.status is EntryStatus.STALE:
            return True
        if self.updated_at is None:
            return True
        return now - self.updated_at >= self.stale_time


@dataclass(frozen=True)
class _SavedEntry:

    data: Any
    has_data: bool
    status: EntryStatus
    updated_at: float | None


@dataclass(frozen=True)
class CacheSnapshot:

    '''
    Saved values for a set of keys, restorable exactly.

    Args:
        entries (dict[QueryKey, _SavedEntry | None]): Saved state per key, None if the key had no entry.
    '''

    entries: dict[QueryKey, _SavedEntry | None]

    @property
    def keys(self) -> list[QueryKey]:

        return list(self.entries)


class QueryCache:

    '''
    Explicitly owned cache of keyed position data.

    Args:
        stale_time (float): Default seconds before a value is stale
        gc_time (float): Default seconds an unsubscribed entry is kept
        debounce (float): Quiet period for coalescing invalidations
        dedup_window (float): Minimum age before an age-based refresh may refetch a key
        retry_policy (RetryPolicy | None): Backoff applied to fetchers
        clock (Callable[[], float]): Monotonic clock for staleness decisions
    '''

    def __init__(
        self,
        *,
        stale_time: float = 300.0,
        gc_time: float = 600.0,
        debounce: float = 0.1,
        dedup_window: float = 1.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:

        self._stale_time = stale_time
        self._gc_time = gc_time
        self._dedup_window = dedup_window
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._scheduler = CoalescingScheduler(debounce)
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._holds: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> QueryCache:

        '''
        Build a cache from configuration.

        Args:
            settings (Settings): Loaded configuration
            **kwargs (Any): Overrides, e.g. clock

        Returns:
            QueryCache: Configured cache
        '''

        retry_policy = RetryPolicy(
            max_attempts=settings.query_retry_attempts,
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        options: dict[str, Any] = {
            'stale_time': settings.stale_time_s,
            'gc_time': settings.gc_time_s,
            'debounce': settings.invalidation_debounce_s,
            'dedup_window': settings.dedup_window_s,
            'retry_policy': retry_policy,
        }
        options.update(kwargs)
        return cls(**options)

    def __len__(self) -> int:

        return len(self._entries)

    def __contains__(self, key: object) -> bool:

        return isinstance(key, tuple) and canonical(key) in self._entries

    def get(self, key: QueryKey) -> CacheEntry | None:

        '''
        Return the entry for key without triggering a fetch.

        Args:
            key (QueryKey): Cache key

        Returns:
            CacheEntry | None: Entry, or None if the key is not cached
        '''

        return self._entries.get(canonical(key))

    def get_data(self, key: QueryKey, default: Any = None) -> Any:

        '''
        Return the cached value for key, or default if there is none.

        Args:
            key (QueryKey): Cache key
            default (Any): Returned when the key holds no value

        Returns:
            Any: Cached value
        '''

        entry = self.get(key)
        if entry is None or not entry.has_data:
            return default
        return entry.data

    def set(self, key: QueryKey, data: Any) -> CacheEntry:

        '''
        Store a value as fresh and notify subscribers.

        Args:
            key (QueryKey): Cache key
            data (Any): New value

        Returns:
            CacheEntry: Updated entry
        '''

        entry = self._ensure(key)
        entry.data = data
        entry.has_data = True
        entry.status = EntryStatus.IDLE
        entry.error = None
        entry.updated_at = self._clock()
        self._notify(entry)
        self._schedule_gc(entry)
        return entry

    def update(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:

        '''
        Replace the cached value with updater(current).

        Args:
            key (QueryKey): Cache key
            updater (Callable[[Any], Any]): Receives the current value, or None without one

        Returns:
            Any: The stored value
        '''

        data = updater(self.get_data(key))
        self.set(key, data)
        return data

    def remove(self, key: QueryKey) -> bool:

        '''
        Drop the entry for key.

        Args:
            key (QueryKey): Cache key

        Returns:
            bool: True if an entry was removed
        '''

        entry = self._entries.pop(canonical(key), None)
        if entry is None:
            return False
        self._cancel_gc(entry)
        return True

    def find(self, pattern: QueryKey = ()) -> list[CacheEntry]:

        '''
        Return entries whose key starts with pattern.

        Args:
            pattern (QueryKey): Key prefix, the empty tuple matches all entries

        Returns:
            list[CacheEntry]: Matching entries in insertion order
        '''

        return [entry for entry in self._entries.values() if matches(pattern, entry.key)]

    def is_fetching(self, key: QueryKey) -> bool:

        return canonical(key) in self._in_flight

    async def fetch(
        self,
        key: QueryKey,
        fetcher: Fetcher | None = None,
        *,
        stale_time: float | None = None,
        gc_time: float | None = None,
        force: bool = False,
    ) -> Any:

        '''
        Read key through the cache.

        Fresh values are returned as is. Stale values are returned
        immediately while a background refresh runs. Without a value the
        caller waits for the fetch, sharing it with every concurrent reader.
        A held key always yields its optimistic value.

        Args:
            key (QueryKey): Cache key
            fetcher (Fetcher | None): Loader, registered on the entry for later refetches
            stale_time (float | None): Override of the default stale time
            gc_time (float | None): Override of the default gc time
            force (bool): Wait for a fresh fetch even if a value is cached

        Returns:
            Any: Cached or freshly fetched value
        '''

        existing = self.get(key)
        if fetcher is None and (existing is None or existing.fetcher is None):
            msg = f'No fetcher registered for {canonical(key)}'
            raise ValueError(msg)

        entry = self._ensure(key, fetcher=fetcher, stale_time=stale_time, gc_time=gc_time)
        loader = entry.fetcher

        if entry.has_data and self.is_held(key):
            return entry.data

        if entry.has_data and not force:
            if entry.is_stale(self._clock()):
                self._start_fetch(entry, loader, forced=False)
            return entry.data

        task = self._start_fetch(entry, loader, forced=True)
        if task is None:
            msg = f'Forced fetch of {canonical(key)} was not started'
            raise RuntimeError(msg)
        return await asyncio.shield(task)

    def invalidate(self, pattern: QueryKey = (), *, debounce: bool = True) -> int:

        '''
        Mark matching entries stale and schedule a refetch of the subscribed ones.

        Repeated invalidations of the same pattern within the debounce
        period collapse into one refetch.

        Args:
            pattern (QueryKey): Key prefix
            debounce (bool): Coalesce with other invalidations of the pattern when True

        Returns:
            int: Number of entries marked stale
        '''

        entries = self.find(pattern)
        for entry in entries:
            entry.generation += 1
            if entry.has_data:
                entry.status = EntryStatus.STALE
            self._notify(entry)

        if _running_loop() is None:
            _log.debug('invalidated %d entries for %s without a running loop', len(entries), canonical(pattern))
            return len(entries)

        if debounce and self._scheduler.delay > 0:
            self._scheduler.schedule(canonical(pattern), lambda: self._refetch_matching(pattern))
        else:
            self._refetch_matching(pattern)
        return len(entries)

    def subscribe(
        self,
        key: QueryKey,
        listener: Listener,
        *,
        fetcher: Fetcher | None = None,
        stale_time: float | None = None,
        gc_time: float | None = None,
    ) -> Callable[[], None]:

        '''
        Register listener for every state change of key.

        A stale or empty entry with a fetcher is loaded in the background.

        Args:
            key (QueryKey): Cache key
            listener (Listener): Called synchronously with the entry
            fetcher (Fetcher | None): Loader to register on the entry
            stale_time (float | None): Override of the default stale time
            gc_time (float | None): Override of the default gc time

        Returns:
            Callable[[], None]: Idempotent unsubscribe handle
        '''

        entry = self._ensure(key, fetcher=fetcher, stale_time=stale_time, gc_time=gc_time)
        self._cancel_gc(entry)
        entry.subscribers.append(listener)

        if (
            entry.fetcher is not None
            and entry.is_stale(self._clock())
            and _running_loop() is not None
        ):
            self._start_fetch(entry, entry.fetcher, forced=False)

        def unsubscribe() -> None:
            if listener in entry.subscribers:
                entry.subscribers.remove(listener)
                self._schedule_gc(entry)

        return unsubscribe

    def snapshot(self, keys: Iterable[QueryKey]) -> CacheSnapshot:

        '''
        Save the current state of keys.

        Args:
            keys (Iterable[QueryKey]): Keys to save

        Returns:
            CacheSnapshot: State restorable with restore()
        '''

        saved: dict[QueryKey, _SavedEntry | None] = {}
        for key in keys:
            entry = self.get(key)
            saved[key] = None if entry is None else _SavedEntry(
                data=entry.data,
                has_data=entry.has_data,
                status=entry.status,
                updated_at=entry.updated_at,
            )
        return CacheSnapshot(entries=saved)

    def restore(self, snapshot: CacheSnapshot) -> None:

        '''
        Put every key in snapshot back to its saved state and notify subscribers.

        Args:
            snapshot (CacheSnapshot): State saved by snapshot()
        '''

        for key, saved in snapshot.entries.items():
            entry = self.get(key)
            if saved is None:
                if entry is None:
                    continue
                if not entry.subscribers:
                    self.remove(key)
                    continue
                entry.data = None
                entry.has_data = False
                entry.status = EntryStatus.IDLE
                entry.updated_at = None
            else:
                entry = entry or self._ensure(key)
                entry.data = saved.data
                entry.has_data = saved.has_data
                entry.status = saved.status
                entry.updated_at = saved.updated_at
            self._notify(entry)

    def hold(self, keys: Iterable[QueryKey]) -> None:

        '''
        Protect keys from being overwritten by fetch results.

        Holds nest; each hold must be matched by a release.

        Args:
            keys (Iterable[QueryKey]): Keys written by an unresolved optimistic mutation
        '''

        for key in keys:
            token = canonical(key)
            self._holds[token] = self._holds.get(token, 0) + 1

    def release(self, keys: Iterable[QueryKey]) -> None:

        for key in keys:
            token = canonical(key)
            count = self._holds.get(token, 0) - 1
            if count > 0:
                self._holds[token] = count
            else:
                self._holds.pop(token, None)
                entry = self._entries.get(token)
                if entry is not None:
                    self._schedule_gc(entry)

    def is_held(self, key: QueryKey) -> bool:

        return canonical(key) in self._holds

    def held_keys(self) -> list[QueryKey]:

        return [entry.key for token, entry in self._entries.items() if token in self._holds]

    def clear(self) -> None:

        '''Drop every entry and pending invalidation. In-flight fetches finish but are not stored.'''

        self._scheduler.cancel_all()
        for entry in self._entries.values():
            self._cancel_gc(entry)
        self._entries.clear()

    async def close(self) -> None:

        '''Clear the cache and wait for in-flight fetches to finish.'''

        self.clear()
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.wait(pending)

    def _ensure(
        self,
        key: QueryKey,
        *,
        fetcher: Fetcher | None = None,
        stale_time: float | None = None,
        gc_time: float | None = None,
    ) -> CacheEntry:

        token = canonical(key)
        entry = self._entries.get(token)
        if entry is None:
            entry = CacheEntry(key=key, stale_time=self._stale_time, gc_time=self._gc_time)
            self._entries[token] = entry
        if fetcher is not None:
            entry.fetcher = fetcher
        if stale_time is not None:
            entry.stale_time = stale_time
        if gc_time is not None:
            entry.gc_time = gc_time
        return entry

    def _start_fetch(self, entry: CacheEntry, fetcher: Fetcher, *, forced: bool) -> asyncio.Task[Any] | None:

        token = canonical(entry.key)
        task = self._in_flight.get(token)
        if task is not None and not task.done():
            return task

        if (
            not forced
            and entry.has_data
            and entry.status is not EntryStatus.STALE
            and entry.last_fetched_at is not None
            and self._clock() - entry.last_fetched_at < self._dedup_window
        ):
            _log.debug('fetch of %s suppressed inside de-dup window', token)
            return None

        task = asyncio.get_running_loop().create_task(self._run_fetch(entry, fetcher))
        self._in_flight[token] = task
        task.add_done_callback(lambda t: self._on_fetch_done(token, t))
        return task

    async def _run_fetch(self, entry: CacheEntry, fetcher: Fetcher) -> Any:

        token = canonical(entry.key)
        generation = entry.generation

        if not entry.has_data:
            entry.status = EntryStatus.LOADING
            self._notify(entry)

        try:
            data = await retry_with_backoff(fetcher, self._retry_policy, label=f'fetch {token}')
        except Exception as exc:
            error = as_ledger_error(exc)
            if self._entries.get(token) is entry:
                entry.error = error
                entry.status = EntryStatus.ERROR
                entry.last_fetched_at = self._clock()
                self._notify(entry)
            if error is exc:
                raise
            raise error from exc

        if self._entries.get(token) is not entry:
            return data

        now = self._clock()
        entry.last_fetched_at = now

        if entry.has_data and self.is_held(entry.key):
            _log.debug('fetch result for held key %s not stored', token)
            return entry.data

        entry.data = data
        entry.has_data = True
        entry.error = None
        entry.updated_at = now
        invalidated = entry.generation != generation
        entry.status = EntryStatus.STALE if invalidated else EntryStatus.IDLE
        self._notify(entry)

        if invalidated and entry.subscribers and entry.fetcher is not None:
            _log.debug('%s invalidated during fetch, refetching', token)
            asyncio.get_running_loop().call_soon(self._refetch_entry, token)

        return data

    def _on_fetch_done(self, token: str, task: asyncio.Task[Any]) -> None:

        if self._in_flight.get(token) is task:
            del self._in_flight[token]

        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                _log.warning('fetch of %s failed: %s', token, exc)

        entry = self._entries.get(token)
        if entry is not None:
            self._schedule_gc(entry)

    def _refetch_entry(self, token: str) -> None:

        entry = self._entries.get(token)
        if entry is not None and entry.subscribers and entry.fetcher is not None:
            self._start_fetch(entry, entry.fetcher, forced=True)

    def _refetch_matching(self, pattern: QueryKey) -> None:

        for entry in self.find(pattern):
            if entry.subscribers and entry.fetcher is not None:
                self._start_fetch(entry, entry.fetcher, forced=True)

    def _notify(self, entry: CacheEntry) -> None:

        for listener in list(entry.subscribers):
            try:
                listener(entry)
            except Exception:
                _log.exception('cache subscriber for %s raised', canonical(entry.key))

    def _schedule_gc(self, entry: CacheEntry) -> None:

        if entry.subscribers:
            return
        loop = _running_loop()
        if loop is None:
            return
        self._cancel_gc(entry)
        entry.gc_handle = loop.call_later(entry.gc_time, self._collect, canonical(entry.key))

    def _cancel_gc(self, entry: CacheEntry) -> None:

        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
            entry.gc_handle = None

    def _collect(self, token: str) -> None:

        entry = self._entries.get(token)
        if entry is None:
            return
        entry.gc_handle = None
        if entry.subscribers or token in self._holds or token in self._in_flight:
            return
        del self._entries[token]
        _log.debug('evicted %s', token)


def _running_loop() -> asyncio.AbstractEventLoop | None:

    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
