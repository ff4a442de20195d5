'''
Domain dataclasses for the Ledgerline position subsystem.

Re-exports all domain types: enums, positions, transactions, store
payloads, pending operations, push events, and derived read models.
'''

from __future__ import annotations

from ledgerline.core.domain.enums import (
    EntityKind,
    EntryStatus,
    ErrorKind,
    MutationState,
    OperationKind,
    OperationStatus,
    TransactionType,
)
from ledgerline.core.domain.events import (
    PositionChanged,
    PositionRemoved,
    PushEvent,
    TransactionRecorded,
)
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import TEMP_ID_PREFIX, Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.summary import PortfolioSummary, PositionWithMetrics
from ledgerline.core.domain.transaction import Transaction

__all__ = [
    'EntityKind',
    'EntryStatus',
    'ErrorKind',
    'MutationState',
    'OperationKind',
    'OperationStatus',
    'PendingOperation',
    'PortfolioSummary',
    'Position',
    'PositionChanged',
    'PositionInput',
    'PositionPatch',
    'PositionRemoved',
    'PositionWithMetrics',
    'PushEvent',
    'TEMP_ID_PREFIX',
    'Transaction',
    'TransactionRecorded',
    'TransactionType',
]
