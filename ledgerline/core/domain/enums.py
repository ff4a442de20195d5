'''
Enumerated types for the Ledgerline position domain.

Defines transaction sides, cache entry lifecycle, pending operation
kinds and states, push entity kinds, and the error taxonomy shared by
the optimistic and offline replay paths.
'''

from __future__ import annotations

from enum import Enum


__all__ = [
    'EntityKind',
    'EntryStatus',
    'ErrorKind',
    'MutationState',
    'OperationKind',
    'OperationStatus',
    'TransactionType',
]


class TransactionType(Enum):

    '''Buy or sell side of a ledger transaction.'''

    BUY = 'BUY'
    SELL = 'SELL'


class EntryStatus(Enum):

    '''
    Cache entry lifecycle states.

    IDLE holds fresh data, LOADING has a first fetch in flight, STALE
    holds servable data awaiting refresh, ERROR records the last failure.
    '''

    IDLE = 'idle'
    LOADING = 'loading'
    STALE = 'stale'
    ERROR = 'error'


class OperationKind(Enum):

    '''Position Store mutation carried by a PendingOperation.'''

    CREATE_POSITION = 'CREATE_POSITION'
    UPDATE_POSITION = 'UPDATE_POSITION'
    DELETE_POSITION = 'DELETE_POSITION'


class OperationStatus(Enum):

    '''
    Durable queue lifecycle of a PendingOperation.

    Terminal states: CONFIRMED, FAILED.
    '''

    QUEUED = 'QUEUED'
    DISPATCHING = 'DISPATCHING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'


class MutationState(Enum):

    '''Optimistic mutation state machine: PENDING then CONFIRMED or ROLLED_BACK.'''

    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    ROLLED_BACK = 'ROLLED_BACK'


class EntityKind(Enum):

    '''Kind of record carried by a real-time push event.'''

    POSITION = 'position'
    TRANSACTION = 'transaction'


class ErrorKind(Enum):

    '''
    Error taxonomy tags.

    Local ledger errors: INVALID_QUANTITY, INVALID_PRICE, OVERSELLING,
    DIVISION_BY_ZERO. Store errors: the remainder.
    '''

    INVALID_QUANTITY = 'INVALID_QUANTITY'
    INVALID_PRICE = 'INVALID_PRICE'
    OVERSELLING = 'OVERSELLING'
    DIVISION_BY_ZERO = 'DIVISION_BY_ZERO'
    NOT_FOUND = 'NOT_FOUND'
    CONFLICT = 'CONFLICT'
    PERMISSION_DENIED = 'PERMISSION_DENIED'
    VALIDATION = 'VALIDATION'
    RATE_LIMITED = 'RATE_LIMITED'
    NETWORK_FAILURE = 'NETWORK_FAILURE'
    SERVER_FAILURE = 'SERVER_FAILURE'
