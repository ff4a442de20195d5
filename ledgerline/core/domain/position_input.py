'''
Request payloads sent to the Position Store.

PositionInput records a purchase (creating the position or merging
into an existing one for the same symbol). PositionPatch edits an
existing position: a lower quantity is a sale, a higher one a purchase
at the given price.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ledgerline.core.domain._require import _require_aware, _require_str


__all__ = ['PositionInput', 'PositionPatch']

_ZERO = Decimal(0)


@dataclass(frozen=True)
class PositionInput:

    '''
    Purchase of a symbol within a portfolio.

    Args:
        portfolio_id (str): Target portfolio.
        symbol (str): Instrument symbol, upper-cased on construction.
        quantity (Decimal): Units bought, must be positive.
        price (Decimal): Purchase price per unit, must be positive.
        name (str | None): Optional display name.
        current_price (Decimal | None): Optional market price, must be positive if set.
        transaction_date (datetime | None): Trade time, defaults to store receipt time.
    '''

    portfolio_id: str
    symbol: str
    quantity: Decimal
    price: Decimal
    name: str | None = None
    current_price: Decimal | None = None
    transaction_date: datetime | None = None

    def __post_init__(self) -> None:

        '''Validate invariants and normalise the symbol.'''

        _require_str('PositionInput', 'portfolio_id', self.portfolio_id)
        _require_str('PositionInput', 'symbol', self.symbol)
        _require_aware('PositionInput', 'transaction_date', self.transaction_date, optional=True)
        object.__setattr__(self, 'symbol', self.symbol.strip().upper())

        if self.quantity <= _ZERO:
            msg = 'PositionInput.quantity must be positive'
            raise ValueError(msg)
        if self.price <= _ZERO:
            msg = 'PositionInput.price must be positive'
            raise ValueError(msg)
        if self.current_price is not None and self.current_price <= _ZERO:
            msg = 'PositionInput.current_price must be positive'
            raise ValueError(msg)


@dataclass(frozen=True)
class PositionPatch:

    '''
    Edit of an existing position.

    Args:
        quantity (Decimal | None): New absolute quantity, non-negative. Zero closes the position.
        price (Decimal | None): Price of the implied buy or sell, must be positive if set.
        name (str | None): New display name.
        transaction_date (datetime | None): Trade time for the implied transaction.
    '''

    quantity: Decimal | None = None
    price: Decimal | None = None
    name: str | None = None
    transaction_date: datetime | None = None

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        _require_aware('PositionPatch', 'transaction_date', self.transaction_date, optional=True)

        if self.quantity is not None and self.quantity < _ZERO:
            msg = 'PositionPatch.quantity must be non-negative'
            raise ValueError(msg)
        if self.price is not None and self.price <= _ZERO:
            msg = 'PositionPatch.price must be positive'
            raise ValueError(msg)
        if self.quantity is None and self.name is None:
            msg = 'PositionPatch must change quantity or name'
            raise ValueError(msg)
