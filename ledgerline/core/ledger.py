'''
Average-cost ledger arithmetic.

Pure, side-effect-free functions that turn buys, sells, and quantity
edits into aggregate position fields. All inputs are validated and
converted to Decimal before any arithmetic runs; bad input raises the
matching LedgerError and is never coerced.

Buys move the average cost to the quantity-weighted mean of the old
holding and the new lot. Sells never change the average cost of the
remaining units.
'''

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from ledgerline.core.domain.enums import TransactionType
from ledgerline.core.domain.position import Position
from ledgerline.core.domain.transaction import Transaction
from ledgerline.core.errors import (
    DivisionByZeroError,
    InvalidPriceError,
    InvalidQuantityError,
    LedgerError,
    OversellingError,
)

__all__ = [
    'BuyResult',
    'LedgerState',
    'PositionMetrics',
    'SellResult',
    'UpdateImpact',
    'apply_buy',
    'apply_sell',
    'compute_metrics',
    'compute_update_impact',
    'rebuild_from_transactions',
    'to_decimal',
]

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class BuyResult:

    '''
    Aggregate after a purchase.

    Args:
        quantity (Decimal): Quantity after the purchase.
        average_cost (Decimal): Weighted mean cost per unit.
        total_invested (Decimal): quantity * average_cost.
    '''

    quantity: Decimal
    average_cost: Decimal
    total_invested: Decimal


@dataclass(frozen=True)
class SellResult:

    '''
    Aggregate after a sale.

    Args:
        remaining_qty (Decimal): Quantity left after the sale.
        average_cost (Decimal): Unchanged cost per unit.
        total_invested (Decimal): remaining_qty * average_cost.
    '''

    remaining_qty: Decimal
    average_cost: Decimal
    total_invested: Decimal


@dataclass(frozen=True)
class PositionMetrics:

    '''
    Unrealized performance of a position. All fields are None when the price is unknown.

    Args:
        current_value (Decimal | None): quantity * current_price.
        unrealized_gain_loss (Decimal | None): current_value - total_invested.
        unrealized_gain_loss_pct (Decimal | None): Gain/loss as percent of total_invested.
    '''

    current_value: Decimal | None = None
    unrealized_gain_loss: Decimal | None = None
    unrealized_gain_loss_pct: Decimal | None = None


@dataclass(frozen=True)
class UpdateImpact:

    '''
    Effect of editing a position's quantity.

    Args:
        quantity_change (Decimal): new_qty - existing quantity.
        new_average_cost (Decimal): Average cost after the edit.
        new_total_invested (Decimal): Invested capital after the edit.
        value_change (Decimal): Cost of units added (positive) or cost basis removed (negative).
    '''

    quantity_change: Decimal
    new_average_cost: Decimal
    new_total_invested: Decimal
    value_change: Decimal


@dataclass(frozen=True)
class LedgerState:

    '''
    Aggregate derived from a transaction log.

    Args:
        quantity (Decimal): Net quantity held.
        average_cost (Decimal): Average cost, zero when nothing is held.
        total_invested (Decimal): quantity * average_cost.
    '''

    quantity: Decimal
    average_cost: Decimal
    total_invested: Decimal

    @property
    def is_closed(self) -> bool:

        '''Return True if nothing is held.'''

        return self.quantity == _ZERO


def to_decimal(value: Any, field: str, error: type[LedgerError]) -> Decimal:

    '''
    Convert a numeric input to a finite, non-negative Decimal.

    Args:
        value (Any): Decimal, int, float, or numeric string
        field (str): Field name for error context
        error (type[LedgerError]): Error class raised on rejection

    Returns:
        Decimal: Validated value
    '''

    if value is None or isinstance(value, bool):
        msg = f'{field} is required'
        raise error(msg)

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(repr(value) if isinstance(value, float) else value.strip())
        except InvalidOperation:
            msg = f'{field} is not a number: {value!r}'
            raise error(msg) from None
    else:
        msg = f'{field} must be numeric, got {type(value).__name__}'
        raise error(msg)

    if not result.is_finite():
        msg = f'{field} must be finite'
        raise error(msg)

    if result < _ZERO:
        msg = f'{field} must be non-negative'
        raise error(msg)

    return result


def apply_buy(existing_qty: Any, existing_avg_cost: Any, add_qty: Any, add_price: Any) -> BuyResult:

    '''
    Compute the aggregate after buying add_qty units at add_price.

    Args:
        existing_qty (Any): Quantity held before the purchase, zero for a first buy
        existing_avg_cost (Any): Average cost before the purchase
        add_qty (Any): Quantity bought, must be positive
        add_price (Any): Price per unit, must be positive

    Returns:
        BuyResult: New quantity, weighted average cost, and invested capital
    '''

    held = to_decimal(existing_qty, 'existing_qty', InvalidQuantityError)
    avg = to_decimal(existing_avg_cost, 'existing_avg_cost', InvalidPriceError)
    qty = to_decimal(add_qty, 'add_qty', InvalidQuantityError)
    price = to_decimal(add_price, 'add_price', InvalidPriceError)

    new_qty = held + qty
    if new_qty == _ZERO:
        msg = 'Cannot average cost over a total quantity of zero'
        raise DivisionByZeroError(msg)

    if qty == _ZERO:
        msg = 'add_qty must be positive'
        raise InvalidQuantityError(msg)

    if price == _ZERO:
        msg = 'add_price must be positive'
        raise InvalidPriceError(msg)

    if held > _ZERO and avg == _ZERO:
        msg = 'existing_avg_cost must be positive for an existing holding'
        raise InvalidPriceError(msg)

    average_cost = (held * avg + qty * price) / new_qty
    return BuyResult(
        quantity=new_qty,
        average_cost=average_cost,
        total_invested=new_qty * average_cost,
    )


def apply_sell(existing_qty: Any, existing_avg_cost: Any, sell_qty: Any) -> SellResult:

    '''
    Compute the aggregate after selling sell_qty units.

    Args:
        existing_qty (Any): Quantity held before the sale
        existing_avg_cost (Any): Average cost before the sale
        sell_qty (Any): Quantity sold, must be positive and at most existing_qty

    Returns:
        SellResult: Remaining quantity, unchanged average cost, and invested capital
    '''

    held = to_decimal(existing_qty, 'existing_qty', InvalidQuantityError)
    avg = to_decimal(existing_avg_cost, 'existing_avg_cost', InvalidPriceError)
    qty = to_decimal(sell_qty, 'sell_qty', InvalidQuantityError)

    if qty == _ZERO:
        msg = 'sell_qty must be positive'
        raise InvalidQuantityError(msg)

    if qty > held:
        raise OversellingError(requested=qty, available=held)

    if avg == _ZERO:
        msg = 'existing_avg_cost must be positive for an existing holding'
        raise InvalidPriceError(msg)

    remaining = held - qty
    return SellResult(
        remaining_qty=remaining,
        average_cost=avg,
        total_invested=remaining * avg,
    )


def compute_metrics(position: Position, current_price: Any = None) -> PositionMetrics:

    '''
    Compute unrealized performance for a position.

    Args:
        position (Position): Position to evaluate
        current_price (Any): Market price per unit, None when unknown

    Returns:
        PositionMetrics: Current value and unrealized gain/loss, all None without a price
    '''

    if current_price is None:
        return PositionMetrics()

    price = to_decimal(current_price, 'current_price', InvalidPriceError)
    if price == _ZERO:
        msg = 'current_price must be positive'
        raise InvalidPriceError(msg)

    current_value = position.quantity * price
    gain_loss = current_value - position.total_invested
    pct = None
    if position.total_invested != _ZERO:
        pct = gain_loss / position.total_invested * _HUNDRED

    return PositionMetrics(
        current_value=current_value,
        unrealized_gain_loss=gain_loss,
        unrealized_gain_loss_pct=pct,
    )


def compute_update_impact(position: Position, new_qty: Any, new_price: Any = None) -> UpdateImpact:

    '''
    Compute the cost-basis effect of setting a position's quantity to new_qty.

    An increase is treated as a purchase of the delta at new_price, which
    is then required. A decrease is a sale of the delta and needs no
    price. An unchanged quantity is a no-op.

    Args:
        position (Position): Current position
        new_qty (Any): Target quantity, non-negative
        new_price (Any): Price of the implied purchase

    Returns:
        UpdateImpact: Quantity change and resulting average cost and invested capital
    '''

    target = to_decimal(new_qty, 'new_qty', InvalidQuantityError)
    if new_price is not None:
        price = to_decimal(new_price, 'new_price', InvalidPriceError)
        if price == _ZERO:
            msg = 'new_price must be positive'
            raise InvalidPriceError(msg)

    change = target - position.quantity

    if change == _ZERO:
        return UpdateImpact(
            quantity_change=_ZERO,
            new_average_cost=position.average_cost,
            new_total_invested=position.total_invested,
            value_change=_ZERO,
        )

    if change > _ZERO:
        if new_price is None:
            msg = 'A price is required when increasing a position'
            raise InvalidPriceError(msg)
        bought = apply_buy(position.quantity, position.average_cost, change, price)
        return UpdateImpact(
            quantity_change=change,
            new_average_cost=bought.average_cost,
            new_total_invested=bought.total_invested,
            value_change=change * price,
        )

    sold = apply_sell(position.quantity, position.average_cost, -change)
    return UpdateImpact(
        quantity_change=change,
        new_average_cost=sold.average_cost,
        new_total_invested=sold.total_invested,
        value_change=change * position.average_cost,
    )


def rebuild_from_transactions(transactions: Iterable[Transaction]) -> LedgerState:

    '''
    Replay a transaction log into an aggregate.

    Transactions are applied in transaction_date order, ties broken by
    created_at. Average cost resets to zero whenever the holding is
    fully sold.

    Args:
        transactions (Iterable[Transaction]): Log for a single position

    Returns:
        LedgerState: Quantity, average cost, and invested capital after the log
    '''

    quantity = _ZERO
    average_cost = _ZERO

    ordered = sorted(transactions, key=lambda t: (t.transaction_date, t.created_at))
    for txn in ordered:
        if txn.type is TransactionType.BUY:
            bought = apply_buy(quantity, average_cost, txn.quantity, txn.price)
            quantity, average_cost = bought.quantity, bought.average_cost
        else:
            sold = apply_sell(quantity, average_cost, txn.quantity)
            quantity = sold.remaining_qty
            if quantity == _ZERO:
                average_cost = _ZERO

    return LedgerState(
        quantity=quantity,
        average_cost=average_cost,
        total_invested=quantity * average_cost,
    )
