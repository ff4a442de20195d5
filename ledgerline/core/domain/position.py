'''
Position dataclass representing the aggregate holding of one symbol.

Positions are immutable snapshots: every buy, sell, or edit produces a
new Position via dataclasses.replace(). Cache entries hand the same
object to every reader, so no reader can observe a half-applied edit.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ledgerline.core.domain._require import _require_aware, _require_str


__all__ = ['Position', 'TEMP_ID_PREFIX', 'TOTAL_INVESTED_TOLERANCE']

_ZERO = Decimal(0)

TOTAL_INVESTED_TOLERANCE = Decimal('1e-6')

TEMP_ID_PREFIX = 'temp-'


@dataclass(frozen=True)
class Position:

    '''
    Aggregate holding of a symbol within a portfolio.

    Args:
        id (str): Store-assigned identifier, or a temp- prefixed id while optimistic.
        portfolio_id (str): Owning portfolio.
        symbol (str): Upper-cased instrument symbol.
        quantity (Decimal): Units held, non-negative. Zero means closed.
        average_cost (Decimal): Weighted mean purchase price, non-negative.
        total_invested (Decimal): quantity * average_cost within TOTAL_INVESTED_TOLERANCE.
        created_at (datetime): Creation time, must be timezone-aware.
        updated_at (datetime): Last mutation time, must be timezone-aware.
        name (str | None): Optional display name.
        current_price (Decimal | None): Last known market price, None when unknown.
    '''

    id: str
    portfolio_id: str
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    total_invested: Decimal
    created_at: datetime
    updated_at: datetime
    name: str | None = None
    current_price: Decimal | None = None

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        for field in ('id', 'portfolio_id', 'symbol'):
            _require_str('Position', field, getattr(self, field))
        _require_aware('Position', 'created_at', self.created_at)
        _require_aware('Position', 'updated_at', self.updated_at)

        if self.symbol != self.symbol.upper():
            msg = 'Position.symbol must be upper-case'
            raise ValueError(msg)

        if self.quantity < _ZERO:
            msg = 'Position.quantity must be non-negative'
            raise ValueError(msg)

        if self.average_cost < _ZERO:
            msg = 'Position.average_cost must be non-negative'
            raise ValueError(msg)

        if self.quantity > _ZERO and self.average_cost == _ZERO:
            msg = 'Position.average_cost must be positive for an open position'
            raise ValueError(msg)

        if self.current_price is not None and self.current_price <= _ZERO:
            msg = 'Position.current_price must be positive when set'
            raise ValueError(msg)

        expected = self.quantity * self.average_cost
        if abs(self.total_invested - expected) > TOTAL_INVESTED_TOLERANCE * max(abs(expected), Decimal(1)):
            msg = (
                f'Position.total_invested {self.total_invested} does not match '
                f'quantity * average_cost {expected}'
            )
            raise ValueError(msg)

    @property
    def is_closed(self) -> bool:

        '''Return True if the position has been fully sold.'''

        return self.quantity == _ZERO

    @property
    def is_optimistic(self) -> bool:

        '''Return True if the id is a client-side placeholder awaiting confirmation.'''

        return self.id.startswith(TEMP_ID_PREFIX)

