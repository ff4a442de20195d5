'''
Optimistic Update Manager.

Applies a mutation to the cache before the Position Store confirms it,
then either reconciles the cache with the store's record or restores
the exact pre-mutation snapshot. Mutations touching the same keys are
serialized on per-key locks, always acquired in canonical key order.

Every mutation moves PENDING -> CONFIRMED or PENDING -> ROLLED_BACK.
A rollback restores the snapshot and raises the classified error to
the caller. Nothing is retried automatically.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ledgerline.core.domain.enums import MutationState, OperationStatus
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import Position
from ledgerline.core.errors import LedgerError, as_ledger_error
from ledgerline.core.mutations import affected_keys, apply_optimistic, dispatch, reconcile
from ledgerline.core.query_cache import CacheSnapshot, QueryCache
from ledgerline.core.query_keys import QueryKey, canonical

if TYPE_CHECKING:
    from ledgerline.infrastructure.position_store import PositionStore

__all__ = ['OptimisticUpdateManager', 'SettleListener']

_log = logging.getLogger(__name__)

SettleListener = Callable[[PendingOperation, MutationState], None]


def _utc_now() -> datetime:

    return datetime.now(timezone.utc)


@dataclass
class _Staged:

    op: PendingOperation
    keys: list[QueryKey]
    snapshot: CacheSnapshot


class OptimisticUpdateManager:

    '''
    Issue, confirm, and roll back optimistic position mutations.

    Args:
        cache (QueryCache): Cache receiving speculative writes
        store (PositionStore): Store mutations are dispatched to
        now (Callable[[], datetime]): Timezone-aware clock for synthesized records
    '''

    def __init__(
        self,
        cache: QueryCache,
        store: PositionStore,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:

        self._cache = cache
        self._store = store
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, MutationState] = {}
        self._staged: dict[str, _Staged] = {}
        self._listeners: list[SettleListener] = []

    @property
    def cache(self) -> QueryCache:

        return self._cache

    def state(self, op_id: str) -> MutationState | None:

        '''
        Return the state machine position of a mutation.

        Args:
            op_id (str): PendingOperation id

        Returns:
            MutationState | None: Current state, None if the mutation was never issued
        '''

        return self._states.get(op_id)

    def in_flight(self) -> int:

        '''Return the number of mutations still PENDING.'''

        return sum(1 for state in self._states.values() if state is MutationState.PENDING)

    def on_settle(self, listener: SettleListener) -> Callable[[], None]:

        '''
        Register listener for every mutation that leaves PENDING.

        Args:
            listener (SettleListener): Called with the operation and its final state

        Returns:
            Callable[[], None]: Idempotent unsubscribe handle
        '''

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def execute(self, op: PendingOperation) -> Position | None:

        '''
        Apply op optimistically, dispatch it, and reconcile or roll back.

        Args:
            op (PendingOperation): Mutation to run

        Returns:
            Position | None: Store record, None after a delete or full sale
        '''

        keys = affected_keys(op)
        async with self._locked(keys):
            snapshot = self._begin(op, keys)
            try:
                op.status = OperationStatus.DISPATCHING
                result = await dispatch(self._store, op)
            except Exception as exc:
                error = as_ledger_error(exc)
                self._rollback(op, keys, snapshot, error)
                if error is exc:
                    raise
                raise error from exc

            reconcile(self._cache, op, result)
            self._cache.release(keys)
            self._settle(op, MutationState.CONFIRMED)
            return result

    async def stage(self, op: PendingOperation) -> None:

        '''
        Apply op optimistically without dispatching it.

        The affected keys stay held until confirm(), fail(), or discard().

        Args:
            op (PendingOperation): Mutation accepted while the store is unreachable
        '''

        keys = affected_keys(op)
        async with self._locked(keys):
            snapshot = self._begin(op, keys)
            self._staged[op.id] = _Staged(op=op, keys=keys, snapshot=snapshot)
            _log.debug('staged %s %s against %s', op.kind.value, op.id, op.entity_id)

    def confirm(self, op: PendingOperation, result: Position | None) -> None:

        '''
        Reconcile a staged op with the store record returned on replay.

        Ops staged after op are re-applied on top of the store record, so
        readers keep seeing their optimistic values until they resolve.

        Args:
            op (PendingOperation): Replayed mutation, possibly with a remapped position_id
            result (Position | None): Store record
        '''

        staged = self._staged.get(op.id)
        if staged is None:
            reconcile(self._cache, op, result)
        else:
            self._rebase(staged, lambda: reconcile(self._cache, op, result))
            self._cache.release(staged.keys)
        self._settle(op, MutationState.CONFIRMED)

    def fail(self, op: PendingOperation, error: LedgerError) -> list[QueryKey]:

        '''
        Roll back a staged op after a permanent replay failure.

        The pre-mutation snapshot is restored and ops staged after op are
        re-applied on top of it. Callers invalidate the returned keys so
        the cache also catches up with store truth.

        Args:
            op (PendingOperation): Failed mutation
            error (LedgerError): Classified failure

        Returns:
            list[QueryKey]: Keys whose cached values may now be wrong
        '''

        op.status = OperationStatus.FAILED
        op.last_error = error.message
        staged = self._staged.get(op.id)
        if staged is None:
            keys = affected_keys(op)
        else:
            self._rebase(staged, lambda: self._cache.restore(staged.snapshot))
            self._cache.release(staged.keys)
            keys = staged.keys
        _log.warning('rolled back staged %s %s: %s', op.kind.value, op.id, error.message)
        self._settle(op, MutationState.ROLLED_BACK)
        return keys

    def discard(self, op: PendingOperation) -> list[QueryKey]:

        '''
        Drop a staged op without applying it to the store.

        Args:
            op (PendingOperation): Cleared mutation

        Returns:
            list[QueryKey]: Keys whose cached values may now be wrong
        '''

        staged = self._staged.get(op.id)
        if staged is None:
            return affected_keys(op)
        self._rebase(staged, lambda: self._cache.restore(staged.snapshot))
        self._cache.release(staged.keys)
        self._settle(op, MutationState.ROLLED_BACK)
        return staged.keys

    async def restage(self, op: PendingOperation) -> bool:

        '''
        Stage an op reloaded from the durable queue.

        Unlike stage(), a position that is not loaded does not reject
        the op. Its keys are held and the optimistic write is skipped.

        Args:
            op (PendingOperation): Queued mutation from a previous process

        Returns:
            bool: True if the optimistic value was written
        '''

        keys = affected_keys(op)
        async with self._locked(keys):
            snapshot = self._cache.snapshot(keys)
            self._cache.hold(keys)
            self._states[op.id] = MutationState.PENDING
            self._staged[op.id] = _Staged(op=op, keys=keys, snapshot=snapshot)
            return self._reapply(op)

    def _rebase(self, staged: _Staged, resolve: Callable[[], None]) -> None:

        # unwind newer ops, settle this one, then replay the newer ones in order
        order = list(self._staged.values())
        later = order[order.index(staged) + 1:]
        for entry in reversed(later):
            self._cache.restore(entry.snapshot)

        del self._staged[staged.op.id]
        resolve()

        for entry in later:
            keys = affected_keys(entry.op)
            if keys != entry.keys:
                self._cache.hold(keys)
                self._cache.release(entry.keys)
                entry.keys = keys
            entry.snapshot = self._cache.snapshot(keys)
            self._reapply(entry.op)

    def _reapply(self, op: PendingOperation) -> bool:

        try:
            apply_optimistic(self._cache, op, self._now())
        except LedgerError as exc:
            _log.warning('optimistic value of %s %s not applied: %s', op.kind.value, op.id, exc.message)
            return False
        return True

    def _begin(self, op: PendingOperation, keys: list[QueryKey]) -> CacheSnapshot:

        snapshot = self._cache.snapshot(keys)
        self._cache.hold(keys)
        self._states[op.id] = MutationState.PENDING
        try:
            apply_optimistic(self._cache, op, self._now())
        except Exception as exc:
            self._rollback(op, keys, snapshot, as_ledger_error(exc))
            raise
        return snapshot

    def _rollback(
        self,
        op: PendingOperation,
        keys: list[QueryKey],
        snapshot: CacheSnapshot,
        error: LedgerError,
    ) -> None:

        self._cache.restore(snapshot)
        self._cache.release(keys)
        op.status = OperationStatus.FAILED
        op.last_error = error.message
        _log.warning('rolled back %s %s: %s', op.kind.value, op.id, error.message)
        self._settle(op, MutationState.ROLLED_BACK)

    def _settle(self, op: PendingOperation, state: MutationState) -> None:

        self._states[op.id] = state
        if state is MutationState.CONFIRMED:
            op.status = OperationStatus.CONFIRMED
        for listener in list(self._listeners):
            listener(op, state)

    @asynccontextmanager
    async def _locked(self, keys: Iterable[QueryKey]) -> AsyncIterator[None]:

        tokens = sorted({canonical(key) for key in keys})
        async with AsyncExitStack() as stack:
            for token in tokens:
                lock = self._locks.setdefault(token, asyncio.Lock())
                await stack.enter_async_context(lock)
            yield
