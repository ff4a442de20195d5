'''
Caller-facing facade over the cache, optimistic, and sync layers.

Reads go through the QueryCache so every caller shares one copy of each
value. Writes are validated with the ledger functions before anything
touches the cache, then handed to the Sync Manager, which runs them
optimistically online or queues them offline.
'''

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ledgerline.core.domain.enums import OperationKind
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import TEMP_ID_PREFIX, Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.summary import PortfolioSummary, PositionWithMetrics
from ledgerline.core.domain.transaction import Transaction
from ledgerline.core.errors import InvalidPriceError, InvalidQuantityError, NotFoundError
from ledgerline.core.ledger import apply_buy, apply_sell, compute_metrics, compute_update_impact, to_decimal
from ledgerline.core.mutations import find_cached_position
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.query_keys import (
    portfolio_summary,
    position_count,
    position_detail,
    position_list,
    position_metrics,
    transactions_for_position,
)
from ledgerline.core.sync_manager import SyncManager

if TYPE_CHECKING:
    from ledgerline.infrastructure.position_store import PositionStore

__all__ = ['MutationResult', 'PortfolioClient']

_log = logging.getLogger(__name__)

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)

MutationResult = Position | PendingOperation | None


def _utc_now() -> datetime:

    return datetime.now(timezone.utc)


def _new_id() -> str:

    return uuid.uuid4().hex


class PortfolioClient:

    '''
    Read and mutate positions through the shared cache.

    Args:
        cache (QueryCache): Shared cache
        store (PositionStore): Store used by fetchers
        sync (SyncManager): Routes mutations online or into the offline queue
        now (Callable[[], datetime]): Timezone-aware clock for operation timestamps
        new_id (Callable[[], str]): Generator for operation and temporary position ids
    '''

    def __init__(
        self,
        cache: QueryCache,
        store: PositionStore,
        sync: SyncManager,
        *,
        now: Callable[[], datetime] = _utc_now,
        new_id: Callable[[], str] = _new_id,
    ) -> None:

        self._cache = cache
        self._store = store
        self._sync = sync
        self._now = now
        self._new_id = new_id

    @property
    def cache(self) -> QueryCache:

        return self._cache

    @property
    def sync(self) -> SyncManager:

        return self._sync

    async def positions(self, portfolio_id: str) -> list[Position]:

        '''
        Return the open positions of a portfolio.

        Args:
            portfolio_id (str): Portfolio identifier

        Returns:
            list[Position]: Cached or freshly fetched positions, newest first
        '''

        positions: list[Position] = await self._cache.fetch(
            position_list(portfolio_id),
            lambda: self._store.fetch_positions(portfolio_id),
        )
        return positions

    async def position(self, position_id: str) -> Position | None:

        '''
        Return one position.

        Args:
            position_id (str): Server or temporary position id

        Returns:
            Position | None: Position, None if it was removed locally
        '''

        resolved = self._sync.resolve_id(position_id)
        position: Position | None = await self._cache.fetch(
            position_detail(resolved),
            lambda: self._store.fetch_position(resolved),
        )
        return position

    async def position_count(self, portfolio_id: str) -> int:

        async def load() -> int:
            return len(await self._store.fetch_positions(portfolio_id))

        count: int = await self._cache.fetch(position_count(portfolio_id), load)
        return count

    async def positions_with_metrics(self, portfolio_id: str) -> list[PositionWithMetrics]:

        '''
        Return each open position with its unrealized performance.

        Args:
            portfolio_id (str): Portfolio identifier

        Returns:
            list[PositionWithMetrics]: Metrics are None where the market price is unknown
        '''

        async def load() -> list[PositionWithMetrics]:
            return [_with_metrics(p) for p in await self.positions(portfolio_id)]

        rows: list[PositionWithMetrics] = await self._cache.fetch(position_metrics(portfolio_id), load)
        return rows

    async def summary(self, portfolio_id: str) -> PortfolioSummary:

        '''
        Return portfolio totals.

        Args:
            portfolio_id (str): Portfolio identifier

        Returns:
            PortfolioSummary: total_value and gains are None if any price is unknown
        '''

        async def load() -> PortfolioSummary:
            return _summarize(portfolio_id, await self.positions(portfolio_id))

        summary: PortfolioSummary = await self._cache.fetch(portfolio_summary(portfolio_id), load)
        return summary

    async def transactions(self, position_id: str) -> list[Transaction]:

        resolved = self._sync.resolve_id(position_id)
        rows: list[Transaction] = await self._cache.fetch(
            transactions_for_position(resolved),
            lambda: self._store.fetch_transactions(resolved),
        )
        return rows

    async def buy(
        self,
        portfolio_id: str,
        symbol: str,
        quantity: Any,
        price: Any,
        *,
        name: str | None = None,
        current_price: Any = None,
        transaction_date: datetime | None = None,
    ) -> MutationResult:

        '''
        Record a purchase, opening a position or adding to the one held for symbol.

        Args:
            portfolio_id (str): Portfolio identifier
            symbol (str): Instrument symbol
            quantity (Any): Units bought
            price (Any): Price per unit
            name (str | None): Display name
            current_price (Any): Known market price
            transaction_date (datetime | None): Trade time

        Returns:
            MutationResult: Confirmed record online, the queued operation offline
        '''

        qty = to_decimal(quantity, 'quantity', InvalidQuantityError)
        px = to_decimal(price, 'price', InvalidPriceError)
        market = None if current_price is None else to_decimal(current_price, 'current_price', InvalidPriceError)
        if qty == _ZERO:
            msg = 'quantity must be positive'
            raise InvalidQuantityError(msg)
        apply_buy(_ZERO, _ZERO, qty, px)
        if market is not None and market == _ZERO:
            msg = 'current_price must be positive'
            raise InvalidPriceError(msg)

        data = PositionInput(
            portfolio_id=portfolio_id,
            symbol=symbol,
            quantity=qty,
            price=px,
            name=name,
            current_price=market,
            transaction_date=transaction_date,
        )

        existing = next(
            (p for p in self._cache.get_data(position_list(portfolio_id)) or () if p.symbol == data.symbol),
            None,
        )
        if existing is not None:
            apply_buy(existing.quantity, existing.average_cost, qty, px)
        target = existing.id if existing is not None else f'{TEMP_ID_PREFIX}{self._new_id()}'

        return await self._submit(OperationKind.CREATE_POSITION, portfolio_id, target, data)

    async def sell(self, position_id: str, quantity: Any, price: Any = None) -> MutationResult:

        '''
        Record a sale. Selling the whole holding closes the position.

        Args:
            position_id (str): Position identifier
            quantity (Any): Units sold
            price (Any): Sale price, defaults to the average cost

        Returns:
            MutationResult: Record after the sale (None once closed) online, the queued operation offline
        '''

        base = await self._require(position_id)
        qty = to_decimal(quantity, 'quantity', InvalidQuantityError)
        px = None if price is None else to_decimal(price, 'price', InvalidPriceError)
        if px is not None and px == _ZERO:
            msg = 'price must be positive'
            raise InvalidPriceError(msg)
        sold = apply_sell(base.quantity, base.average_cost, qty)

        patch = PositionPatch(quantity=sold.remaining_qty, price=px)
        return await self._submit(OperationKind.UPDATE_POSITION, base.portfolio_id, base.id, patch)

    async def edit_position(
        self,
        position_id: str,
        *,
        quantity: Any = None,
        price: Any = None,
        name: str | None = None,
    ) -> MutationResult:

        '''
        Edit a position's quantity or name.

        Raising the quantity is a purchase of the difference at price.
        Lowering it is a sale of the difference.

        Args:
            position_id (str): Position identifier
            quantity (Any): New absolute quantity
            price (Any): Price of the implied purchase
            name (str | None): New display name

        Returns:
            MutationResult: Record after the edit online, the queued operation offline
        '''

        base = await self._require(position_id)
        qty = None if quantity is None else to_decimal(quantity, 'quantity', InvalidQuantityError)
        px = None if price is None else to_decimal(price, 'price', InvalidPriceError)
        if qty is not None:
            compute_update_impact(base, qty, px)
        if qty is None and name is None:
            msg = 'edit_position needs a quantity or a name'
            raise InvalidQuantityError(msg)

        patch = PositionPatch(quantity=qty, price=px, name=name)
        return await self._submit(OperationKind.UPDATE_POSITION, base.portfolio_id, base.id, patch)

    async def delete_position(self, position_id: str) -> MutationResult:

        '''
        Delete a position. Its transactions are kept.

        Args:
            position_id (str): Position identifier

        Returns:
            MutationResult: None online, the queued operation offline
        '''

        base = await self._require(position_id)
        return await self._submit(OperationKind.DELETE_POSITION, base.portfolio_id, base.id, None)

    async def _require(self, position_id: str) -> Position:

        resolved = self._sync.resolve_id(position_id)
        cached = self._cache.get_data(position_detail(resolved))
        if isinstance(cached, Position):
            return cached
        for entry in self._cache.find(('positions', 'portfolio')):
            if entry.key[-1] == 'list' and entry.has_data:
                found = find_cached_position(self._cache, entry.key[2], resolved)
                if found is not None:
                    return found

        position = await self.position(resolved)
        if position is None:
            msg = f'Position {position_id} not found'
            raise NotFoundError(msg)
        return position

    async def _submit(
        self,
        kind: OperationKind,
        portfolio_id: str,
        position_id: str,
        payload: PositionInput | PositionPatch | None,
    ) -> MutationResult:

        op = PendingOperation(
            id=self._new_id(),
            kind=kind,
            portfolio_id=portfolio_id,
            position_id=position_id,
            payload=payload,
            created_at=self._now(),
        )
        _log.debug('submitting %s %s for %s', kind.value, op.id, position_id)
        return await self._sync.submit(op)


def _with_metrics(position: Position) -> PositionWithMetrics:

    metrics = compute_metrics(position, position.current_price)
    return PositionWithMetrics(
        position=position,
        current_value=metrics.current_value,
        unrealized_gain_loss=metrics.unrealized_gain_loss,
        unrealized_gain_loss_pct=metrics.unrealized_gain_loss_pct,
    )


def _summarize(portfolio_id: str, positions: list[Position]) -> PortfolioSummary:

    total_invested = sum((p.total_invested for p in positions), _ZERO)

    total_value: Decimal | None = _ZERO
    for position in positions:
        if position.current_price is None:
            total_value = None
            break
        total_value += position.quantity * position.current_price

    gain_loss = None if total_value is None else total_value - total_invested
    pct = None
    if gain_loss is not None and total_invested != _ZERO:
        pct = gain_loss / total_invested * _HUNDRED

    return PortfolioSummary(
        portfolio_id=portfolio_id,
        position_count=len(positions),
        total_invested=total_invested,
        total_value=total_value,
        unrealized_gain_loss=gain_loss,
        unrealized_gain_loss_pct=pct,
    )
