'''
Optimistic synthesis and reconciliation rules for position mutations.

Translates a PendingOperation into the cache writes a reader should
see before the Position Store answers, dispatches the operation to the
store, and folds the store's answer back into the cache. All ledger
arithmetic runs before the first cache write, so a rejected mutation
leaves the cache untouched.
'''

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from ledgerline.core.domain.enums import OperationKind
from ledgerline.core.domain.events import PositionChanged, PositionRemoved, PushEvent, TransactionRecorded
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import TEMP_ID_PREFIX, Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.errors import NotFoundError
from ledgerline.core.ledger import apply_buy, compute_update_impact
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.query_keys import (
    QueryKey,
    portfolio_summary,
    position_count,
    position_detail,
    position_list,
    position_metrics,
    recent_transactions,
    transactions_for_position,
)

if TYPE_CHECKING:
    from ledgerline.infrastructure.position_store import PositionStore

__all__ = [
    'affected_keys',
    'apply_optimistic',
    'dependent_keys',
    'dispatch',
    'find_cached_position',
    'merge_push',
    'push_keys',
    'reconcile',
]

_log = logging.getLogger(__name__)

_REMOVED = None

_P = TypeVar('_P', PositionInput, PositionPatch)


def affected_keys(op: PendingOperation) -> list[QueryKey]:

    '''
    Return the keys an optimistic write of op touches.

    Args:
        op (PendingOperation): Mutation to inspect

    Returns:
        list[QueryKey]: List, count, and detail keys
    '''

    keys = [position_list(op.portfolio_id), position_count(op.portfolio_id)]
    if op.position_id is not None:
        keys.append(position_detail(op.position_id))
    return keys


def dependent_keys(op: PendingOperation) -> list[QueryKey]:

    '''
    Return the derived keys to invalidate once op resolves.

    Args:
        op (PendingOperation): Resolved mutation

    Returns:
        list[QueryKey]: Metrics, summary, count, and transaction keys
    '''

    keys = [
        position_metrics(op.portfolio_id),
        portfolio_summary(op.portfolio_id),
        position_count(op.portfolio_id),
    ]
    if op.position_id is not None and not op.position_id.startswith(TEMP_ID_PREFIX):
        keys.append(transactions_for_position(op.position_id))
    else:
        keys.append(recent_transactions())
    return keys


def find_cached_position(cache: QueryCache, portfolio_id: str, position_id: str) -> Position | None:

    '''
    Look up a position in the detail entry, falling back to the portfolio list.

    Args:
        cache (QueryCache): Cache to search
        portfolio_id (str): Owning portfolio
        position_id (str): Position identifier

    Returns:
        Position | None: Cached position, or None if neither entry has it
    '''

    detail = cache.get_data(position_detail(position_id))
    if isinstance(detail, Position):
        return detail
    for position in cache.get_data(position_list(portfolio_id)) or ():
        if position.id == position_id:
            return position
    return None


def _find_by_symbol(cache: QueryCache, portfolio_id: str, symbol: str) -> Position | None:

    for position in cache.get_data(position_list(portfolio_id)) or ():
        if position.symbol == symbol:
            return position
    return None


def _synthesize_create(cache: QueryCache, op: PendingOperation, now: datetime) -> Position:

    payload = _payload(op, PositionInput)

    base = None
    if op.position_id is not None:
        base = find_cached_position(cache, op.portfolio_id, op.position_id)
    base = base or _find_by_symbol(cache, op.portfolio_id, payload.symbol)

    if base is not None and not base.is_closed:
        bought = apply_buy(base.quantity, base.average_cost, payload.quantity, payload.price)
        return dataclasses.replace(
            base,
            quantity=bought.quantity,
            average_cost=bought.average_cost,
            total_invested=bought.total_invested,
            name=payload.name or base.name,
            current_price=payload.current_price or base.current_price,
            updated_at=now,
        )

    bought = apply_buy(0, 0, payload.quantity, payload.price)
    if op.position_id is None:
        msg = 'CREATE_POSITION needs a position_id to synthesize a new position'
        raise ValueError(msg)
    return Position(
        id=op.position_id,
        portfolio_id=op.portfolio_id,
        symbol=payload.symbol,
        quantity=bought.quantity,
        average_cost=bought.average_cost,
        total_invested=bought.total_invested,
        created_at=now,
        updated_at=now,
        name=payload.name,
        current_price=payload.current_price,
    )


def _synthesize_update(base: Position, patch: PositionPatch, now: datetime) -> Position | None:

    if patch.quantity is None or patch.quantity == base.quantity:
        return dataclasses.replace(base, name=patch.name or base.name, updated_at=now)

    impact = compute_update_impact(base, patch.quantity, patch.price)
    if patch.quantity == 0:
        return _REMOVED

    return dataclasses.replace(
        base,
        quantity=patch.quantity,
        average_cost=impact.new_average_cost,
        total_invested=impact.new_total_invested,
        name=patch.name or base.name,
        updated_at=now,
    )


def apply_optimistic(cache: QueryCache, op: PendingOperation, now: datetime) -> None:

    '''
    Write the speculative post-mutation values for op into the cache.

    Buys and quantity edits go through the ledger functions; name-only
    edits merge directly. Ledger errors are raised before any write.

    Args:
        cache (QueryCache): Cache to write
        op (PendingOperation): Mutation to apply
        now (datetime): Timestamp for created_at/updated_at of synthesized records
    '''

    if op.kind is OperationKind.CREATE_POSITION:
        _write_position(cache, op.portfolio_id, _synthesize_create(cache, op, now))
        return

    position_id = _position_id(op)
    base = find_cached_position(cache, op.portfolio_id, position_id)

    if op.kind is OperationKind.DELETE_POSITION:
        _remove_position(cache, op.portfolio_id, position_id)
        return

    if base is None:
        msg = f'Position {position_id} is not loaded'
        raise NotFoundError(msg)

    updated = _synthesize_update(base, _payload(op, PositionPatch), now)
    if updated is _REMOVED:
        _remove_position(cache, op.portfolio_id, position_id)
    else:
        _write_position(cache, op.portfolio_id, updated)


def reconcile(
    cache: QueryCache,
    op: PendingOperation,
    result: Position | None,
    *,
    refresh: bool = True,
) -> None:

    '''
    Replace synthesized values with the store's answer.

    A temporary id is swapped for the server id in the list and detail
    entries. Dependent aggregates are invalidated so they refetch.

    Args:
        cache (QueryCache): Cache to write
        op (PendingOperation): Confirmed mutation
        result (Position | None): Store record, None when the position no longer exists
        refresh (bool): Invalidate dependent keys when True
    '''

    if result is None:
        if op.position_id is not None:
            _remove_position(cache, op.portfolio_id, op.position_id)
            cache.remove(position_detail(op.position_id))
    else:
        if op.position_id is not None and op.position_id != result.id:
            _log.debug('swapping %s for server id %s', op.position_id, result.id)
            _replace_in_list(cache, op.portfolio_id, op.position_id, result)
            cache.remove(position_detail(op.position_id))
        _write_position(cache, op.portfolio_id, result)

    if refresh:
        for key in dependent_keys(op):
            cache.invalidate(key)
        if result is not None and result.id != op.position_id:
            cache.invalidate(transactions_for_position(result.id))


def push_keys(event: PushEvent) -> list[QueryKey]:

    '''
    Return the keys a push event overwrites.

    Args:
        event (PushEvent): Remote change

    Returns:
        list[QueryKey]: Keys that must not be held for the event to apply
    '''

    if isinstance(event, PositionChanged):
        return [
            position_list(event.portfolio_id),
            position_count(event.portfolio_id),
            position_detail(event.record.id),
        ]
    if isinstance(event, PositionRemoved):
        return [
            position_list(event.portfolio_id),
            position_count(event.portfolio_id),
            position_detail(event.position_id),
        ]
    return [transactions_for_position(event.record.position_id)]


def merge_push(cache: QueryCache, event: PushEvent) -> None:

    '''
    Fold a remote change into the cache and invalidate the aggregates it affects.

    Args:
        cache (QueryCache): Cache to write
        event (PushEvent): Remote change
    '''

    pid = event.portfolio_id

    if isinstance(event, PositionChanged):
        cached = find_cached_position(cache, pid, event.record.id)
        if cached is not None and cached.updated_at > event.record.updated_at:
            _log.debug('ignoring push for %s older than the cached record', event.record.id)
        else:
            _write_position(cache, pid, event.record, create_detail=False)
    elif isinstance(event, PositionRemoved):
        _remove_position(cache, pid, event.position_id)
    elif isinstance(event, TransactionRecorded):
        cache.invalidate(transactions_for_position(event.record.position_id))

    for key in (position_metrics(pid), portfolio_summary(pid), position_count(pid)):
        cache.invalidate(key)


async def dispatch(store: PositionStore, op: PendingOperation) -> Position | None:

    '''
    Send op to the Position Store.

    Args:
        store (PositionStore): Target store
        op (PendingOperation): Mutation to send

    Returns:
        Position | None: Store record, None after a delete or a full sale
    '''

    if op.kind is OperationKind.CREATE_POSITION:
        return await store.create_position(_payload(op, PositionInput))

    position_id = _position_id(op)
    if op.kind is OperationKind.UPDATE_POSITION:
        return await store.update_position(position_id, _payload(op, PositionPatch))

    await store.delete_position(position_id)
    return None


def _payload(op: PendingOperation, expected: type[_P]) -> _P:

    if not isinstance(op.payload, expected):
        msg = f'{op.kind.value} needs a {expected.__name__} payload, got {type(op.payload).__name__}'
        raise TypeError(msg)
    return op.payload


def _position_id(op: PendingOperation) -> str:

    if op.position_id is None:
        msg = f'{op.kind.value} needs a position_id'
        raise ValueError(msg)
    return op.position_id


def _write_position(cache: QueryCache, portfolio_id: str, position: Position, *, create_detail: bool = True) -> None:

    list_key = position_list(portfolio_id)
    current = cache.get_data(list_key)
    if current is not None:
        replaced = False
        positions: list[Position] = []
        for existing in current:
            if existing.id == position.id or existing.symbol == position.symbol:
                if not replaced:
                    positions.append(position)
                    replaced = True
            else:
                positions.append(existing)
        if not replaced:
            positions.insert(0, position)
            _adjust_count(cache, portfolio_id, 1)
        cache.set(list_key, positions)

    detail_key = position_detail(position.id)
    if create_detail or cache.get(detail_key) is not None:
        cache.set(detail_key, position)


def _replace_in_list(cache: QueryCache, portfolio_id: str, old_id: str, position: Position) -> None:

    list_key = position_list(portfolio_id)
    current = cache.get_data(list_key)
    if current is None:
        return
    positions = [position if existing.id == old_id else existing for existing in current]
    cache.set(list_key, positions)


def _remove_position(cache: QueryCache, portfolio_id: str, position_id: str) -> None:

    list_key = position_list(portfolio_id)
    current = cache.get_data(list_key)
    if current is not None:
        positions = [existing for existing in current if existing.id != position_id]
        if len(positions) != len(current):
            cache.set(list_key, positions)
            _adjust_count(cache, portfolio_id, -1)

    detail_key = position_detail(position_id)
    if cache.get(detail_key) is not None:
        cache.set(detail_key, _REMOVED)


def _adjust_count(cache: QueryCache, portfolio_id: str, delta: int) -> None:

    count_key = position_count(portfolio_id)
    count: Any = cache.get_data(count_key)
    if isinstance(count, int):
        cache.set(count_key, max(count + delta, 0))
