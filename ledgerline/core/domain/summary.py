'''
Derived read models computed from positions and market prices.

These are cache values only; the Position Store never persists them.
Missing market data propagates as None so callers can show "unknown"
instead of a misleading zero.
'''

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ledgerline.core.domain.position import Position


__all__ = ['PortfolioSummary', 'PositionWithMetrics']


@dataclass(frozen=True)
class PositionWithMetrics:

    '''
    Position paired with its unrealized performance.

    Args:
        position (Position): Underlying position.
        current_value (Decimal | None): quantity * current_price.
        unrealized_gain_loss (Decimal | None): current_value - total_invested.
        unrealized_gain_loss_pct (Decimal | None): Gain/loss as percent of total_invested.
    '''

    position: Position
    current_value: Decimal | None
    unrealized_gain_loss: Decimal | None
    unrealized_gain_loss_pct: Decimal | None


@dataclass(frozen=True)
class PortfolioSummary:

    '''
    Portfolio-level totals.

    Args:
        portfolio_id (str): Summarised portfolio.
        position_count (int): Number of open positions.
        total_invested (Decimal): Sum of total_invested across positions.
        total_value (Decimal | None): Sum of current values, None if any price is unknown.
        unrealized_gain_loss (Decimal | None): total_value - total_invested.
        unrealized_gain_loss_pct (Decimal | None): Gain/loss as percent of total_invested.
    '''

    portfolio_id: str
    position_count: int
    total_invested: Decimal
    total_value: Decimal | None
    unrealized_gain_loss: Decimal | None
    unrealized_gain_loss_pct: Decimal | None
