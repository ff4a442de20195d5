'''
In-memory Position Store.

Keeps positions and their transaction logs in process memory. Every
write appends a transaction and recomputes the position from its full
log, so the stored aggregate can never drift from the transactions.
Optionally publishes each change to an InMemoryPushChannel.

Used as the reference store in tests and for local development. It can
simulate an unreachable network, injected failures, and per-call
latency.
'''

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

from ledgerline.core.domain.enums import TransactionType
from ledgerline.core.domain.events import PositionChanged, PositionRemoved, TransactionRecorded
from ledgerline.core.domain.position import Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.transaction import Transaction
from ledgerline.core.errors import InvalidPriceError, NetworkFailureError, NotFoundError
from ledgerline.core.ledger import rebuild_from_transactions
from ledgerline.infrastructure.push_channel import InMemoryPushChannel

__all__ = ['InMemoryPositionStore']

_log = logging.getLogger(__name__)

_ZERO = Decimal(0)


def _utc_now() -> datetime:

    return datetime.now(timezone.utc)


class InMemoryPositionStore:

    '''
    Position Store held in process memory.

    Args:
        push_channel (InMemoryPushChannel | None): Channel to publish changes to
        now (Callable[[], datetime]): Timezone-aware clock for record timestamps
    '''

    def __init__(
        self,
        *,
        push_channel: InMemoryPushChannel | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:

        self._push_channel = push_channel
        self._now = now
        self._positions: dict[str, Position] = {}
        self._transactions: dict[str, list[Transaction]] = {}
        self._position_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self._failures: deque[Exception] = deque()
        self._delays: deque[float] = deque()
        self.unreachable = False
        self.calls: list[tuple[str, str]] = []

    def fail_next(self, *errors: Exception) -> None:

        '''
        Make the next calls raise errors, one per call, in order.

        Args:
            *errors (Exception): Errors to raise
        '''

        self._failures.extend(errors)

    def delay_next(self, *delays: float) -> None:

        '''
        Make the next calls sleep before answering, one delay per call.

        Args:
            *delays (float): Seconds to sleep
        '''

        self._delays.extend(delays)

    def set_price(self, position_id: str, price: Decimal | None) -> Position:

        '''
        Set the external market price of a position.

        Args:
            position_id (str): Position identifier
            price (Decimal | None): Market price, None when unknown

        Returns:
            Position: Updated record
        '''

        position = self._get(position_id)
        updated = dataclasses.replace(position, current_price=price)
        self._positions[position_id] = updated
        return updated

    def stored_positions(self) -> list[Position]:

        '''Return every stored position without simulating a call.'''

        return list(self._positions.values())

    async def fetch_positions(self, portfolio_id: str) -> list[Position]:

        await self._enter('fetch_positions', portfolio_id)
        positions = [p for p in self._positions.values() if p.portfolio_id == portfolio_id]
        return sorted(positions, key=lambda p: p.created_at, reverse=True)

    async def fetch_position(self, position_id: str) -> Position:

        await self._enter('fetch_position', position_id)
        return self._get(position_id)

    async def create_position(self, data: PositionInput) -> Position:

        '''
        Record a purchase, merging into the open position for the symbol.

        Args:
            data (PositionInput): Purchase to record

        Returns:
            Position: Record recomputed from its transaction log
        '''

        await self._enter('create_position', f'{data.portfolio_id}:{data.symbol}')
        now = self._now()

        existing = next(
            (
                p for p in self._positions.values()
                if p.portfolio_id == data.portfolio_id and p.symbol == data.symbol
            ),
            None,
        )

        if existing is None:
            base = Position(
                id=f'pos-{next(self._position_ids)}',
                portfolio_id=data.portfolio_id,
                symbol=data.symbol,
                quantity=_ZERO,
                average_cost=_ZERO,
                total_invested=_ZERO,
                created_at=now,
                updated_at=now,
                name=data.name,
                current_price=data.current_price,
            )
        else:
            base = dataclasses.replace(
                existing,
                name=data.name or existing.name,
                current_price=data.current_price or existing.current_price,
            )

        txn = self._record(base.id, TransactionType.BUY, data.quantity, data.price, data.transaction_date or now)
        position = self._recompute(base)
        self._publish(PositionChanged(portfolio_id=position.portfolio_id, timestamp=now, record=position))
        self._publish(TransactionRecorded(portfolio_id=position.portfolio_id, timestamp=now, record=txn))
        return position

    async def update_position(self, position_id: str, patch: PositionPatch) -> Position | None:

        '''
        Edit a position, recording the buy or sell implied by a quantity change.

        A decrease without a price is recorded at the current average cost.

        Args:
            position_id (str): Position identifier
            patch (PositionPatch): Edit to apply

        Returns:
            Position | None: Recomputed record, None if the position was fully sold
        '''

        await self._enter('update_position', position_id)
        now = self._now()
        base = self._get(position_id)
        if patch.name is not None:
            base = dataclasses.replace(base, name=patch.name)

        txn = None
        if patch.quantity is not None and patch.quantity != base.quantity:
            change = patch.quantity - base.quantity
            if change > _ZERO:
                if patch.price is None:
                    msg = 'A price is required when increasing a position'
                    raise InvalidPriceError(msg)
                side, price = TransactionType.BUY, patch.price
            else:
                side, price = TransactionType.SELL, patch.price or base.average_cost
            txn = self._record(position_id, side, abs(change), price, patch.transaction_date or now)

        position = self._recompute(base) if txn is not None else dataclasses.replace(base, updated_at=now)

        if txn is not None:
            self._publish(TransactionRecorded(portfolio_id=base.portfolio_id, timestamp=now, record=txn))

        if position.is_closed:
            del self._positions[position_id]
            self._publish(PositionRemoved(portfolio_id=base.portfolio_id, timestamp=now, position_id=position_id))
            return None

        self._positions[position_id] = position
        self._publish(PositionChanged(portfolio_id=position.portfolio_id, timestamp=now, record=position))
        return position

    async def delete_position(self, position_id: str) -> None:

        await self._enter('delete_position', position_id)
        position = self._get(position_id)
        del self._positions[position_id]
        self._publish(
            PositionRemoved(portfolio_id=position.portfolio_id, timestamp=self._now(), position_id=position_id),
        )

    async def fetch_transactions(self, position_id: str) -> list[Transaction]:

        await self._enter('fetch_transactions', position_id)
        if position_id not in self._transactions:
            msg = f'Position {position_id} has no transactions'
            raise NotFoundError(msg)
        log = self._transactions[position_id]
        return sorted(log, key=lambda t: (t.transaction_date, t.created_at), reverse=True)

    async def _enter(self, method: str, target: str) -> None:

        if self._delays:
            await asyncio.sleep(self._delays.popleft())
        if self.unreachable:
            msg = f'{method} could not reach the store'
            raise NetworkFailureError(msg)
        if self._failures:
            raise self._failures.popleft()
        self.calls.append((method, target))

    def _get(self, position_id: str) -> Position:

        try:
            return self._positions[position_id]
        except KeyError:
            msg = f'Position {position_id} not found'
            raise NotFoundError(msg) from None

    def _record(
        self,
        position_id: str,
        side: TransactionType,
        quantity: Decimal,
        price: Decimal,
        transaction_date: datetime,
    ) -> Transaction:

        txn = Transaction(
            id=f'txn-{next(self._transaction_ids)}',
            position_id=position_id,
            type=side,
            quantity=quantity,
            price=price,
            transaction_date=transaction_date,
            created_at=self._now(),
        )
        self._transactions.setdefault(position_id, []).append(txn)
        _log.debug('recorded %s %s @ %s on %s', side.value, quantity, price, position_id)
        return txn

    def _recompute(self, base: Position) -> Position:

        '''Rebuild base from its log. The newest transaction is dropped if the log no longer replays.'''

        try:
            state = rebuild_from_transactions(self._transactions.get(base.id, ()))
        except Exception:
            log = self._transactions.get(base.id)
            if log:
                log.pop()
            raise

        position = dataclasses.replace(
            base,
            quantity=state.quantity,
            average_cost=state.average_cost,
            total_invested=state.total_invested,
            updated_at=self._now(),
        )
        if not position.is_closed:
            self._positions[position.id] = position
        return position

    def _publish(self, event: PositionChanged | PositionRemoved | TransactionRecorded) -> None:

        if self._push_channel is not None:
            self._push_channel.publish(event)
