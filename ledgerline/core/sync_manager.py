'''
Real-time and offline synchronization.

The Sync Manager sits between callers and the Optimistic Update
Manager. It merges push events into the cache without clobbering
unresolved optimistic writes, routes mutations into the durable queue
while the store is unreachable, and replays that queue strictly in
insertion order once connectivity returns.

Replay classifies every failure the same way the optimistic path does.
A permanent failure drops the operation and puts the cache back to
its pre-mutation snapshot before invalidating what it touched.
Exhausted retries leave it at the head of the queue and stop draining
until the next reconnect or manual sync.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from ledgerline.core.domain.enums import MutationState, OperationKind, OperationStatus
from ledgerline.core.domain.events import PushEvent
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import Position
from ledgerline.core.errors import LedgerError, as_ledger_error
from ledgerline.core.mutations import dependent_keys, dispatch, merge_push, push_keys
from ledgerline.core.optimistic import OptimisticUpdateManager
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.query_keys import QueryKey, portfolio_summary, position_all, position_list, position_metrics
from ledgerline.core.retry import RetryPolicy, retry_with_backoff

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from ledgerline.infrastructure.connectivity import ConnectivityMonitor
    from ledgerline.infrastructure.operation_queue import OperationQueue
    from ledgerline.infrastructure.position_store import PositionStore
    from ledgerline.infrastructure.push_channel import PushChannel, Unsubscribe

__all__ = ['SyncManager', 'SyncReport']

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncReport:

    '''
    Outcome of one drain of the durable queue.

    Args:
        confirmed (int): Operations applied by the store.
        failed (int): Operations dropped after a permanent failure.
        remaining (int): Operations still queued.
    '''

    confirmed: int = 0
    failed: int = 0
    remaining: int = 0


class SyncManager:

    '''
    Coordinate push merging, offline queueing, and queue replay.

    Args:
        optimistic (OptimisticUpdateManager): Manager owning speculative writes
        store (PositionStore): Store operations are replayed against
        queue (OperationQueue): Durable FIFO of pending operations
        connectivity (ConnectivityMonitor): Online/offline signal
        push_channel (PushChannel | None): Source of remote change events
        retry_policy (RetryPolicy | None): Backoff applied to each replayed operation
        background_refresh (float | None): Seconds between price refreshes, None to disable
        sleep (Callable[[float], Awaitable[None]]): Sleep used between replay retries
    '''

    def __init__(
        self,
        optimistic: OptimisticUpdateManager,
        store: PositionStore,
        queue: OperationQueue,
        connectivity: ConnectivityMonitor,
        push_channel: PushChannel | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        background_refresh: float | None = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:

        self._optimistic = optimistic
        self._cache: QueryCache = optimistic.cache
        self._store = store
        self._queue = queue
        self._connectivity = connectivity
        self._push_channel = push_channel
        self._retry_policy = retry_policy or RetryPolicy()
        self._background_refresh = background_refresh
        self._sleep = sleep

        self._pending: list[PendingOperation] = []
        self._deferred: list[PushEvent] = []
        self._subscriptions: dict[str, Unsubscribe] = {}
        self._id_map: dict[str, str] = {}
        self._drain_lock = asyncio.Lock()
        self._sync_task: asyncio.Task[SyncReport] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self.failures: list[PendingOperation] = []

    @property
    def is_online(self) -> bool:

        return self._connectivity.is_online

    @property
    def pending_count(self) -> int:

        return len(self._pending)

    def pending_operations(self) -> list[PendingOperation]:

        '''Return queued operations in replay order.'''

        return list(self._pending)

    def resolve_id(self, position_id: str) -> str:

        '''
        Return the server id for a temporary position id.

        Args:
            position_id (str): Temporary or server id

        Returns:
            str: Server id once the creating operation is confirmed, else position_id
        '''

        return self._id_map.get(position_id, position_id)

    def deferred_pushes(self) -> list[PushEvent]:

        return list(self._deferred)

    async def start(self) -> None:

        '''
        Reload the durable queue and begin listening for connectivity changes.

        Operations persisted by a previous process are staged again, so
        their optimistic values stay visible, and are replayed on the next
        reconnect or immediately when already online.
        '''

        self._pending = await self._queue.list()
        if self._pending:
            if self.is_online:
                await self._load_bases()
            applied = 0
            for op in self._pending:
                applied += await self._optimistic.restage(op)
            _log.info('restored %d queued operations, %d applied to the cache', len(self._pending), applied)

        self._unsubscribers.append(self._connectivity.subscribe(self._on_connectivity))
        self._unsubscribers.append(self._optimistic.on_settle(self._on_settle))
        if self._pending and self.is_online:
            self._schedule_sync()

        if self._background_refresh is not None and self._refresh_task is None:
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop(self._background_refresh))

    async def close(self) -> None:

        '''Stop background work and unsubscribe from every collaborator.'''

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        for portfolio_id in list(self._subscriptions):
            await self.detach(portfolio_id)

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        if self._sync_task is not None and not self._sync_task.done():
            await asyncio.wait([self._sync_task])

    async def attach(self, portfolio_id: str) -> None:

        '''
        Subscribe to push events for a portfolio. Attaching twice is a no-op.

        Args:
            portfolio_id (str): Portfolio scope
        '''

        if self._push_channel is None or portfolio_id in self._subscriptions:
            return
        self._subscriptions[portfolio_id] = await self._push_channel.subscribe(portfolio_id, self._on_push)
        _log.debug('attached to push channel for %s', portfolio_id)

    async def detach(self, portfolio_id: str) -> None:

        unsubscribe = self._subscriptions.pop(portfolio_id, None)
        if unsubscribe is not None:
            await unsubscribe()

    def attached(self) -> list[str]:

        return list(self._subscriptions)

    async def submit(self, op: PendingOperation) -> Position | PendingOperation | None:

        '''
        Run op now, or stage and queue it when offline.

        Operations are also queued while earlier ones are still waiting,
        so that replay preserves causal order per entity.

        Args:
            op (PendingOperation): Mutation to apply

        Returns:
            Position | PendingOperation | None: Store record when confirmed online, op when queued
        '''

        if self.is_online and not self._pending:
            return await self._optimistic.execute(op)

        await self._optimistic.stage(op)
        try:
            await self._queue.append(op)
        except Exception:
            for key in self._optimistic.discard(op):
                self._cache.invalidate(key)
            raise

        self._pending.append(op)
        _log.info('queued %s %s (%d pending)', op.kind.value, op.id, len(self._pending))

        if self.is_online:
            self._schedule_sync()
        return op

    async def sync_now(self) -> SyncReport:

        '''
        Drain the durable queue in insertion order.

        Returns:
            SyncReport: Counts of confirmed, failed, and remaining operations
        '''

        if not self.is_online:
            _log.info('sync skipped while offline, %d pending', len(self._pending))
            return SyncReport(remaining=len(self._pending))

        confirmed = failed = 0
        async with self._drain_lock:
            while self._pending and self.is_online:
                op = self._pending[0]

                with structlog.contextvars.bound_contextvars(op_id=op.id, portfolio_id=op.portfolio_id):
                    outcome = await self._replay(op)

                if outcome is None:
                    break
                if outcome:
                    confirmed += 1
                else:
                    failed += 1

        report = SyncReport(confirmed=confirmed, failed=failed, remaining=len(self._pending))
        _log.info(
            'sync finished: %d confirmed, %d failed, %d remaining',
            report.confirmed, report.failed, report.remaining,
        )
        return report

    async def clear_queue(self, *, confirm: bool = False) -> int:

        '''
        Discard every queued operation without applying it.

        Args:
            confirm (bool): Must be True; guards against accidental data loss

        Returns:
            int: Number of operations discarded
        '''

        if not confirm:
            msg = 'clear_queue discards unsynced changes; call with confirm=True'
            raise ValueError(msg)

        async with self._drain_lock:
            ops, self._pending = self._pending, []
            await self._queue.clear()
            for op in reversed(ops):
                op.status = OperationStatus.FAILED
                op.last_error = 'cleared before sync'
                for key in self._optimistic.discard(op):
                    self._cache.invalidate(key)
            self._cache.invalidate(position_all())

        _log.warning('cleared %d queued operations', len(ops))
        return len(ops)

    async def _replay(self, op: PendingOperation) -> bool | None:

        '''Dispatch the queue head. Return True if confirmed, False if dropped, None to stop draining.'''

        op.status = OperationStatus.DISPATCHING
        try:
            result = await retry_with_backoff(
                lambda: dispatch(self._store, op),
                self._retry_policy,
                label=f'replay {op.kind.value} {op.id}',
                sleep=self._sleep,
            )
        except Exception as exc:
            error = as_ledger_error(exc)
            if error.retryable:
                op.retry_count += 1
                op.status = OperationStatus.QUEUED
                op.last_error = error.message
                await self._queue.update(op)
                _log.warning('replay of %s stopped after %d retries: %s', op.id, op.retry_count, error.message)
                return None
            await self._drop(op, error)
            return False

        self._pending.pop(0)
        await self._queue.remove(op.id)

        if (
            op.kind is OperationKind.CREATE_POSITION
            and result is not None
            and op.position_id is not None
            and op.position_id != result.id
        ):
            await self._remap(op.position_id, result.id)

        self._optimistic.confirm(op, result)
        _log.info('replayed %s %s', op.kind.value, op.id)
        return True

    async def _drop(self, op: PendingOperation, error: LedgerError) -> None:

        self._pending.pop(0)
        await self._queue.remove(op.id)
        keys: list[QueryKey] = self._optimistic.fail(op, error)
        self.failures.append(op)
        for key in [*keys, *dependent_keys(op)]:
            self._cache.invalidate(key)
        _log.error('dropped %s %s after %s: %s', op.kind.value, op.id, error.kind.value, error.message)

    async def _load_bases(self) -> None:

        for portfolio_id in dict.fromkeys(op.portfolio_id for op in self._pending):
            key = position_list(portfolio_id)
            if self._cache.get(key) is not None:
                continue
            try:
                await self._cache.fetch(key, self._positions_loader(portfolio_id))
            except LedgerError as exc:
                _log.warning('could not load positions of %s before restaging: %s', portfolio_id, exc.message)

    def _positions_loader(self, portfolio_id: str) -> Callable[[], Awaitable[list[Position]]]:

        return lambda: self._store.fetch_positions(portfolio_id)

    async def _remap(self, temp_id: str, server_id: str) -> None:

        self._id_map[temp_id] = server_id
        for queued in self._pending:
            if queued.position_id == temp_id:
                queued.position_id = server_id
                await self._queue.update(queued)
        _log.debug('remapped %s to %s', temp_id, server_id)

    def _schedule_sync(self) -> None:

        if self._sync_task is not None and not self._sync_task.done():
            return
        self._sync_task = asyncio.get_running_loop().create_task(self.sync_now())
        self._sync_task.add_done_callback(self._on_sync_done)

    def _on_sync_done(self, task: asyncio.Task[SyncReport]) -> None:

        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error('background sync failed: %s', exc, exc_info=exc)

    def _on_connectivity(self, online: bool) -> None:

        if online:
            if self._pending:
                self._schedule_sync()
            return
        _log.info('offline, %d operations pending', len(self._pending))

    def _on_push(self, event: PushEvent) -> None:

        if self._deferred or any(self._cache.is_held(key) for key in push_keys(event)):
            self._deferred.append(event)
            _log.debug('deferred %s for %s', type(event).__name__, event.portfolio_id)
            return
        merge_push(self._cache, event)

    def _on_settle(self, op: PendingOperation, state: MutationState) -> None:

        while self._deferred:
            event = self._deferred[0]
            if any(self._cache.is_held(key) for key in push_keys(event)):
                return
            self._deferred.pop(0)
            merge_push(self._cache, event)

    async def _refresh_loop(self, interval: float) -> None:

        while True:
            await asyncio.sleep(interval)
            if not self.is_online:
                continue
            for portfolio_id in self._subscriptions:
                self._cache.invalidate(position_metrics(portfolio_id))
                self._cache.invalidate(portfolio_summary(portfolio_id))
