'''
Transaction dataclass representing one buy or sell against a position.

Transactions are immutable, append-only facts. They outlive the
Position they reference and are the input to rebuild_from_transactions.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ledgerline.core.domain._require import _require_aware, _require_str
from ledgerline.core.domain.enums import TransactionType


__all__ = ['Transaction']

_ZERO = Decimal(0)


@dataclass(frozen=True)
class Transaction:

    '''
    A single recorded buy or sell.

    Args:
        id (str): Store-assigned identifier.
        position_id (str): Position the transaction applies to.
        type (TransactionType): BUY or SELL.
        quantity (Decimal): Units traded, must be positive.
        price (Decimal): Price per unit, must be positive.
        transaction_date (datetime): Trade time, must be timezone-aware.
        created_at (datetime): Record time, must be timezone-aware.
    '''

    id: str
    position_id: str
    type: TransactionType
    quantity: Decimal
    price: Decimal
    transaction_date: datetime
    created_at: datetime

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        _require_str('Transaction', 'id', self.id)
        _require_str('Transaction', 'position_id', self.position_id)
        _require_aware('Transaction', 'transaction_date', self.transaction_date)
        _require_aware('Transaction', 'created_at', self.created_at)

        if self.quantity <= _ZERO:
            msg = 'Transaction.quantity must be positive'
            raise ValueError(msg)
        if self.price <= _ZERO:
            msg = 'Transaction.price must be positive'
            raise ValueError(msg)

    @property
    def signed_quantity(self) -> Decimal:

        '''Return quantity with SELL negated.'''

        return self.quantity if self.type is TransactionType.BUY else -self.quantity
