'''
Position Store protocol.

Define the persistence interface the cache and sync layers talk to.
Implementations own transport, authentication, and status mapping, and
raise the LedgerError taxonomy on failure so callers can classify
every error the same way.
'''

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ledgerline.core.domain.position import Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.transaction import Transaction


__all__ = ['PositionStore']


@runtime_checkable
class PositionStore(Protocol):

    '''
    Store-agnostic interface for reading and mutating positions.

    Consumed by QueryCache fetchers, the Optimistic Update Manager, and
    the offline replay loop.
    '''

    async def fetch_positions(self, portfolio_id: str) -> list[Position]:

        '''
        Return every open position in a portfolio.

        Args:
            portfolio_id (str): Portfolio to list

        Returns:
            list[Position]: Open positions, newest first
        '''

        ...

    async def fetch_position(self, position_id: str) -> Position:

        '''
        Return one position.

        Args:
            position_id (str): Position identifier

        Returns:
            Position: Current record

        Raises:
            NotFoundError: If the position does not exist
        '''

        ...

    async def create_position(self, data: PositionInput) -> Position:

        '''
        Record a purchase, creating the position or merging into the open position for the symbol.

        Args:
            data (PositionInput): Purchase to record

        Returns:
            Position: Record after the purchase
        '''

        ...

    async def update_position(self, position_id: str, patch: PositionPatch) -> Position | None:

        '''
        Edit a position. A quantity change records the implied buy or sell.

        Args:
            position_id (str): Position identifier
            patch (PositionPatch): Edit to apply

        Returns:
            Position | None: Record after the edit, None if the edit closed the position
        '''

        ...

    async def delete_position(self, position_id: str) -> None:

        '''
        Delete a position. Its transactions are kept.

        Args:
            position_id (str): Position identifier
        '''

        ...

    async def fetch_transactions(self, position_id: str) -> list[Transaction]:

        '''
        Return the transaction log of a position.

        Args:
            position_id (str): Position identifier

        Returns:
            list[Transaction]: Transactions, newest first
        '''

        ...
