'''
Tests for ledgerline.core.optimistic.OptimisticUpdateManager.
'''

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledgerline.core.domain.enums import MutationState, OperationKind, OperationStatus
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.errors import (
    ConflictError,
    InvalidPriceError,
    NetworkFailureError,
    NotFoundError,
    ServerFailureError,
)
from ledgerline.core.mutations import dispatch
from ledgerline.core.optimistic import OptimisticUpdateManager
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.query_keys import position_count, position_detail, position_list
from ledgerline.core.retry import RetryPolicy
from ledgerline.infrastructure.memory_store import InMemoryPositionStore

_TS = datetime(2026, 1, 1, tzinfo=timezone.utc)
_PF = 'pf-1'
_LIST = position_list(_PF)
_COUNT = position_count(_PF)


def _op(
    op_id: str,
    kind: OperationKind,
    position_id: str | None,
    payload: PositionInput | PositionPatch | None = None,
) -> PendingOperation:

    return PendingOperation(
        id=op_id,
        kind=kind,
        portfolio_id=_PF,
        position_id=position_id,
        payload=payload,
        created_at=_TS,
    )


def _buy(symbol: str, qty: str, price: str) -> PositionInput:

    return PositionInput(portfolio_id=_PF, symbol=symbol, quantity=Decimal(qty), price=Decimal(price))


def _patch(qty: str, price: str | None = None) -> PositionPatch:

    return PositionPatch(quantity=Decimal(qty), price=None if price is None else Decimal(price))


async def _setup(*, seed: bool = True) -> tuple[QueryCache, InMemoryPositionStore, OptimisticUpdateManager, Position | None]:

    cache = QueryCache(debounce=0.01, retry_policy=RetryPolicy(max_attempts=1))
    store = InMemoryPositionStore()
    position = None
    if seed:
        position = await store.create_position(_buy('AAPL', '100', '10'))
    await cache.fetch(_LIST, lambda: store.fetch_positions(_PF))
    cache.set(_COUNT, len(cache.get_data(_LIST)))
    store.calls.clear()
    return cache, store, OptimisticUpdateManager(cache, store), position


class TestExecute:

    @pytest.mark.asyncio
    async def test_create_swaps_temp_id(self) -> None:

        cache, store, manager, _ = await _setup(seed=False)
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '10', '300'))

        result = await manager.execute(op)

        assert result is not None
        assert result.id == 'pos-1'
        assert [p.id for p in cache.get_data(_LIST)] == ['pos-1']
        assert cache.get_data(_COUNT) == 1
        assert cache.get_data(position_detail('pos-1')) == result
        assert position_detail('temp-1') not in cache
        assert manager.state('op-1') is MutationState.CONFIRMED
        assert op.status is OperationStatus.CONFIRMED
        assert cache.held_keys() == []

    @pytest.mark.asyncio
    async def test_optimistic_value_visible_before_confirmation(self) -> None:

        cache, store, manager, _ = await _setup()
        store.delay_next(0.02)
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '10', '300'))

        task = asyncio.create_task(manager.execute(op))
        await asyncio.sleep(0.005)

        listed = cache.get_data(_LIST)
        assert [p.id for p in listed] == ['temp-1', 'pos-1']
        assert listed[0].is_optimistic
        assert cache.get_data(_COUNT) == 2
        assert manager.state('op-1') is MutationState.PENDING
        assert manager.in_flight() == 1
        assert cache.is_held(_LIST)

        await task
        assert [p.id for p in cache.get_data(_LIST)] == ['pos-2', 'pos-1']
        assert manager.in_flight() == 0

    @pytest.mark.asyncio
    async def test_buy_merges_into_existing_position(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None
        op = _op('op-1', OperationKind.CREATE_POSITION, position.id, _buy('AAPL', '50', '15'))
        store.delay_next(0.02)

        task = asyncio.create_task(manager.execute(op))
        await asyncio.sleep(0.005)

        optimistic = cache.get_data(position_detail(position.id))
        assert optimistic.quantity == Decimal(150)
        assert abs(optimistic.total_invested - Decimal(1750)) < Decimal('1e-9')

        result = await task
        assert result.quantity == Decimal(150)
        assert cache.get_data(_COUNT) == 1

    @pytest.mark.asyncio
    async def test_rollback_restores_snapshot(self) -> None:

        cache, store, manager, _ = await _setup()
        original = cache.get_data(_LIST)
        list_updated_at = cache.get(_LIST).updated_at
        store.fail_next(ConflictError('duplicate symbol'))
        settled: list[MutationState] = []
        manager.on_settle(lambda op, state: settled.append(state))

        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '10', '300'))
        with pytest.raises(ConflictError):
            await manager.execute(op)

        assert cache.get_data(_LIST) is original
        assert cache.get(_LIST).updated_at == list_updated_at
        assert cache.get_data(_COUNT) == 1
        assert position_detail('temp-1') not in cache
        assert cache.held_keys() == []
        assert manager.state('op-1') is MutationState.ROLLED_BACK
        assert op.status is OperationStatus.FAILED
        assert op.last_error == 'duplicate symbol'
        assert settled == [MutationState.ROLLED_BACK]

    @pytest.mark.asyncio
    async def test_retryable_failure_is_not_retried(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None
        original = cache.get_data(_LIST)
        store.fail_next(NetworkFailureError('offline'))

        op = _op('op-1', OperationKind.DELETE_POSITION, position.id)
        with pytest.raises(NetworkFailureError):
            await manager.execute(op)

        assert store.calls == []
        assert cache.get_data(_LIST) is original

    @pytest.mark.asyncio
    async def test_unknown_failure_is_classified(self) -> None:

        _, store, manager, position = await _setup()
        assert position is not None
        store.fail_next(RuntimeError('bug'))

        with pytest.raises(ServerFailureError) as info:
            await manager.execute(_op('op-1', OperationKind.DELETE_POSITION, position.id))
        assert isinstance(info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_ledger_error_leaves_cache_untouched(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None
        original = cache.get_data(_LIST)

        with pytest.raises(InvalidPriceError, match='price is required'):
            await manager.execute(_op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('200')))

        assert cache.get_data(_LIST) is original
        assert cache.held_keys() == []
        assert store.calls == []
        assert manager.state('op-1') is MutationState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_update_of_unloaded_position(self) -> None:

        cache, store, manager, _ = await _setup()

        with pytest.raises(NotFoundError):
            await manager.execute(_op('op-1', OperationKind.UPDATE_POSITION, 'pos-404', _patch('1')))

        assert store.calls == []
        assert cache.held_keys() == []

    @pytest.mark.asyncio
    async def test_same_position_mutations_are_serialized(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None
        store.delay_next(0.02)

        first = _op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('80'))
        second = _op('op-2', OperationKind.UPDATE_POSITION, position.id, _patch('50'))
        results = await asyncio.gather(manager.execute(first), manager.execute(second))

        assert [r.quantity for r in results] == [Decimal(80), Decimal(50)]
        assert store.calls == [('update_position', position.id), ('update_position', position.id)]
        assert cache.get_data(position_detail(position.id)).quantity == Decimal(50)
        assert cache.get_data(_LIST)[0].average_cost == Decimal(10)

    @pytest.mark.asyncio
    async def test_delete(self) -> None:

        cache, _, manager, position = await _setup()
        assert position is not None
        cache.set(position_detail(position.id), position)

        assert await manager.execute(_op('op-1', OperationKind.DELETE_POSITION, position.id)) is None

        assert cache.get_data(_LIST) == []
        assert cache.get_data(_COUNT) == 0

    @pytest.mark.asyncio
    async def test_full_sale_closes_position(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None

        result = await manager.execute(_op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('0')))

        assert result is None
        assert cache.get_data(_LIST) == []
        assert position_detail(position.id) not in cache
        assert store.stored_positions() == []

    @pytest.mark.asyncio
    async def test_name_only_edit(self) -> None:

        cache, _, manager, position = await _setup()
        assert position is not None

        patch = PositionPatch(name='Apple Inc.')
        result = await manager.execute(_op('op-1', OperationKind.UPDATE_POSITION, position.id, patch))

        assert result is not None
        assert result.name == 'Apple Inc.'
        assert result.quantity == Decimal(100)
        assert cache.get_data(_LIST)[0].name == 'Apple Inc.'


class TestStaging:

    @pytest.mark.asyncio
    async def test_stage_holds_until_confirmed(self) -> None:

        cache, store, manager, _ = await _setup()
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '1', '300'))

        await manager.stage(op)
        assert cache.is_held(_LIST)
        assert cache.get_data(position_detail('temp-1')).symbol == 'MSFT'
        assert store.calls == []

        result = await store.create_position(op.payload)
        manager.confirm(op, result)

        assert not cache.is_held(_LIST)
        assert [p.id for p in cache.get_data(_LIST)] == ['pos-2', 'pos-1']
        assert manager.state('op-1') is MutationState.CONFIRMED

    @pytest.mark.asyncio
    async def test_fail_releases_and_reports_keys(self) -> None:

        cache, _, manager, _ = await _setup()
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '1', '300'))
        await manager.stage(op)

        keys = manager.fail(op, ConflictError('dup'))

        assert set(keys) == {_LIST, _COUNT, position_detail('temp-1')}
        assert cache.held_keys() == []
        assert op.status is OperationStatus.FAILED
        assert manager.state('op-1') is MutationState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_discard_unknown_op(self) -> None:

        _, _, manager, position = await _setup()
        assert position is not None
        op = _op('op-9', OperationKind.DELETE_POSITION, position.id)

        assert manager.discard(op) == [_LIST, _COUNT, position_detail(position.id)]
        assert manager.state('op-9') is None

    @pytest.mark.asyncio
    async def test_settle_listener_unsubscribe(self) -> None:

        _, _, manager, position = await _setup()
        assert position is not None
        seen: list[str] = []
        unsubscribe = manager.on_settle(lambda op, state: seen.append(op.id))

        await manager.execute(_op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('90')))
        unsubscribe()
        unsubscribe()
        await manager.execute(_op('op-2', OperationKind.UPDATE_POSITION, position.id, _patch('80')))

        assert seen == ['op-1']

    @pytest.mark.asyncio
    async def test_fail_restores_snapshot(self) -> None:

        cache, _, manager, position = await _setup()
        assert position is not None
        before = cache.get_data(_LIST)
        op = _op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('90'))
        await manager.stage(op)
        assert cache.get_data(_LIST)[0].quantity == Decimal(90)

        manager.fail(op, ConflictError('stale write'))

        assert cache.get_data(_LIST) is before
        assert cache.get_data(_COUNT) == 1
        assert cache.get(position_detail(position.id)) is None

    @pytest.mark.asyncio
    async def test_discard_restores_snapshot(self) -> None:

        cache, _, manager, _ = await _setup()
        before = cache.get_data(_LIST)
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '1', '300'))
        await manager.stage(op)

        manager.discard(op)

        assert cache.get_data(_LIST) is before
        assert cache.get(position_detail('temp-1')) is None
        assert cache.held_keys() == []

    @pytest.mark.asyncio
    async def test_confirm_keeps_later_staged_value(self) -> None:

        cache, store, manager, position = await _setup()
        assert position is not None
        first = _op('op-1', OperationKind.UPDATE_POSITION, position.id, _patch('90'))
        second = _op('op-2', OperationKind.UPDATE_POSITION, position.id, _patch('70'))
        await manager.stage(first)
        await manager.stage(second)

        manager.confirm(first, await store.update_position(position.id, first.payload))

        assert cache.get_data(_LIST)[0].quantity == Decimal(70)
        assert cache.get_data(position_detail(position.id)).quantity == Decimal(70)
        assert cache.is_held(_LIST)

        manager.fail(second, ConflictError('stale write'))

        assert cache.get_data(_LIST)[0].quantity == Decimal(90)
        assert cache.held_keys() == []

    @pytest.mark.asyncio
    async def test_fail_rebases_later_staged_ops(self) -> None:

        cache, _, manager, position = await _setup()
        assert position is not None
        rename = _op('op-1', OperationKind.UPDATE_POSITION, position.id, PositionPatch(name='Renamed'))
        sell = _op('op-2', OperationKind.UPDATE_POSITION, position.id, _patch('90'))
        await manager.stage(rename)
        await manager.stage(sell)

        manager.fail(rename, ConflictError('stale write'))

        [row] = cache.get_data(_LIST)
        assert row.name is None
        assert row.quantity == Decimal(90)
        assert cache.is_held(_LIST)
        assert manager.state('op-2') is MutationState.PENDING

    @pytest.mark.asyncio
    async def test_confirmed_create_moves_later_ops_to_server_id(self) -> None:

        cache, store, manager, _ = await _setup()
        create = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '10', '300'))
        sell = _op('op-2', OperationKind.UPDATE_POSITION, 'temp-1', _patch('4'))
        await manager.stage(create)
        await manager.stage(sell)

        result = await store.create_position(create.payload)
        sell.position_id = result.id
        manager.confirm(create, result)

        assert cache.get_data(position_detail(result.id)).quantity == Decimal(4)
        assert cache.get(position_detail('temp-1')) is None
        assert cache.is_held(position_detail(result.id))
        assert not cache.is_held(position_detail('temp-1'))

    @pytest.mark.asyncio
    async def test_restage_without_loaded_position(self) -> None:

        cache = QueryCache()
        manager = OptimisticUpdateManager(cache, InMemoryPositionStore())
        op = _op('op-1', OperationKind.UPDATE_POSITION, 'pos-1', _patch('90'))

        assert await manager.restage(op) is False

        assert cache.is_held(position_detail('pos-1'))
        assert manager.state('op-1') is MutationState.PENDING

        manager.discard(op)
        assert not cache.is_held(position_detail('pos-1'))

    @pytest.mark.asyncio
    async def test_dispatch_rejects_mismatched_payload(self) -> None:

        _, store, _, _ = await _setup()
        op = _op('op-1', OperationKind.CREATE_POSITION, 'temp-1', _buy('MSFT', '1', '300'))
        op.payload = _patch('1')

        with pytest.raises(TypeError, match='PositionInput'):
            await dispatch(store, op)
        assert store.calls == []
