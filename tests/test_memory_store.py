'''
Tests for ledgerline.infrastructure.memory_store.InMemoryPositionStore.
'''

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledgerline.core.domain.enums import TransactionType
from ledgerline.core.domain.events import PositionChanged, PositionRemoved, PushEvent, TransactionRecorded
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.errors import InvalidPriceError, NetworkFailureError, NotFoundError, OversellingError
from ledgerline.infrastructure.memory_store import InMemoryPositionStore
from ledgerline.infrastructure.position_store import PositionStore
from ledgerline.infrastructure.push_channel import InMemoryPushChannel

_PF = 'pf-1'


def _ticking_clock() -> Iterator[datetime]:

    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    minute = 0
    while True:
        yield start + timedelta(minutes=minute)
        minute += 1


def _store(**kwargs: object) -> InMemoryPositionStore:

    clock = _ticking_clock()
    return InMemoryPositionStore(now=lambda: next(clock), **kwargs)  # type: ignore[arg-type]


def _buy(symbol: str, qty: str, price: str, **extra: object) -> PositionInput:

    return PositionInput(portfolio_id=_PF, symbol=symbol, quantity=Decimal(qty), price=Decimal(price), **extra)  # type: ignore[arg-type]


def test_satisfies_protocol() -> None:

    assert isinstance(InMemoryPositionStore(), PositionStore)


class TestWrites:

    @pytest.mark.asyncio
    async def test_create_then_merge_buy(self) -> None:

        store = _store()
        first = await store.create_position(_buy('AAPL', '100', '10'))
        second = await store.create_position(_buy('aapl', '50', '15', name='Apple'))

        assert first.id == second.id == 'pos-1'
        assert second.quantity == Decimal(150)
        assert second.total_invested == Decimal(1750)
        assert second.name == 'Apple'
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_fetch_positions_newest_first(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '1', '10'))
        await store.create_position(_buy('MSFT', '1', '10'))
        await store.create_position(
            PositionInput(portfolio_id='pf-2', symbol='TSLA', quantity=Decimal(1), price=Decimal(1)),
        )

        assert [p.symbol for p in await store.fetch_positions(_PF)] == ['MSFT', 'AAPL']

    @pytest.mark.asyncio
    async def test_sale_defaults_to_average_cost(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '100', '10'))

        position = await store.update_position('pos-1', PositionPatch(quantity=Decimal(60)))

        assert position is not None
        assert position.quantity == Decimal(60)
        assert position.average_cost == Decimal(10)
        sell = (await store.fetch_transactions('pos-1'))[0]
        assert sell.type is TransactionType.SELL
        assert sell.quantity == Decimal(40)
        assert sell.price == Decimal(10)

    @pytest.mark.asyncio
    async def test_increase_needs_price(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '100', '10'))

        with pytest.raises(InvalidPriceError):
            await store.update_position('pos-1', PositionPatch(quantity=Decimal(120)))

        assert len(await store.fetch_transactions('pos-1')) == 1

    @pytest.mark.asyncio
    async def test_full_sale_removes_position_but_keeps_log(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '100', '10'))

        assert await store.update_position('pos-1', PositionPatch(quantity=Decimal(0))) is None

        assert store.stored_positions() == []
        assert len(await store.fetch_transactions('pos-1')) == 2
        with pytest.raises(NotFoundError):
            await store.fetch_position('pos-1')

    @pytest.mark.asyncio
    async def test_delete_unknown(self) -> None:

        with pytest.raises(NotFoundError):
            await _store().delete_position('pos-404')

    @pytest.mark.asyncio
    async def test_no_transactions(self) -> None:

        with pytest.raises(NotFoundError):
            await _store().fetch_transactions('pos-404')

    @pytest.mark.asyncio
    async def test_name_edit_keeps_log(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '100', '10'))

        position = await store.update_position('pos-1', PositionPatch(name='Apple'))

        assert position is not None
        assert position.name == 'Apple'
        assert len(await store.fetch_transactions('pos-1')) == 1


class TestSimulation:

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:

        store = _store()
        store.unreachable = True

        with pytest.raises(NetworkFailureError):
            await store.fetch_positions(_PF)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_injected_failures_in_order(self) -> None:

        store = _store()
        store.fail_next(NetworkFailureError('first'), OversellingError(requested=Decimal(2), available=Decimal(1)))

        with pytest.raises(NetworkFailureError):
            await store.fetch_positions(_PF)
        with pytest.raises(OversellingError):
            await store.fetch_positions(_PF)
        assert await store.fetch_positions(_PF) == []
        assert store.calls == [('fetch_positions', _PF)]

    @pytest.mark.asyncio
    async def test_delays(self) -> None:

        store = _store()
        store.delay_next(0.02)

        slow = asyncio.create_task(store.fetch_positions(_PF))
        await asyncio.sleep(0)
        await store.fetch_positions('pf-2')
        await slow

        assert store.calls == [('fetch_positions', 'pf-2'), ('fetch_positions', _PF)]

    @pytest.mark.asyncio
    async def test_set_price(self) -> None:

        store = _store()
        await store.create_position(_buy('AAPL', '1', '10'))

        store.set_price('pos-1', Decimal('12.5'))

        assert (await store.fetch_position('pos-1')).current_price == Decimal('12.5')


@pytest.mark.asyncio
async def test_publishes_changes() -> None:

    channel = InMemoryPushChannel()
    store = _store(push_channel=channel)
    seen: list[PushEvent] = []
    await channel.subscribe(_PF, seen.append)

    await store.create_position(_buy('AAPL', '10', '10'))
    await store.update_position('pos-1', PositionPatch(quantity=Decimal(0)))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert [type(e) for e in seen] == [
        PositionChanged,
        TransactionRecorded,
        TransactionRecorded,
        PositionRemoved,
    ]
