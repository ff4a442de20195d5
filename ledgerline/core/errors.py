'''
Error taxonomy for ledger arithmetic and Position Store failures.

Every failure surfaced to a caller is a LedgerError carrying an
ErrorKind tag, the original message, and a retryable flag.
classify_error() maps arbitrary exceptions onto the taxonomy and is the
single retry decision point for both the optimistic mutation path and
the offline replay loop.
'''

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar

import aiohttp

from ledgerline.core.domain.enums import ErrorKind


__all__ = [
    'ConflictError',
    'DivisionByZeroError',
    'ErrorClassification',
    'InvalidPriceError',
    'InvalidQuantityError',
    'LedgerError',
    'NetworkFailureError',
    'NotFoundError',
    'OversellingError',
    'PermissionDeniedError',
    'RateLimitError',
    'ServerFailureError',
    'ValidationError',
    'as_ledger_error',
    'classify_error',
]


class LedgerError(Exception):

    '''
    Base exception for all Ledgerline failures.

    Args:
        message (str): Human-readable error description
        status (int | None): HTTP status when the error came from the store transport
        retryable (bool | None): Override of the class default retry decision
    '''

    kind: ClassVar[ErrorKind] = ErrorKind.SERVER_FAILURE
    default_retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retryable: bool | None = None,
    ) -> None:

        '''
        Store the error message and transport details.

        Args:
            message (str): Human-readable error description
            status (int | None): HTTP status, if any
            retryable (bool | None): Override of the class default retry decision
        '''

        self.message = message
        self.status = status
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:

        '''
        Render the error for a user-facing message.

        Returns:
            dict[str, Any]: kind, message, and retryable flag
        '''

        return {
            'kind': self.kind.value,
            'message': self.message,
            'retryable': self.retryable,
        }


class InvalidQuantityError(LedgerError):

    '''Raised when a quantity is missing, negative, zero where forbidden, or non-finite.'''

    kind = ErrorKind.INVALID_QUANTITY


class InvalidPriceError(LedgerError):

    '''Raised when a price is missing, non-positive, or non-finite.'''

    kind = ErrorKind.INVALID_PRICE


class OversellingError(LedgerError):

    '''
    Raised when a sale exceeds the quantity held.

    Args:
        requested (object): Quantity the caller tried to sell
        available (object): Quantity currently held
    '''

    kind = ErrorKind.OVERSELLING

    def __init__(self, requested: object, available: object) -> None:

        self.requested = requested
        self.available = available
        super().__init__(f'Cannot sell {requested}: only {available} held')


class DivisionByZeroError(LedgerError):

    '''Raised when a buy would average over a total quantity of zero.'''

    kind = ErrorKind.DIVISION_BY_ZERO


class NotFoundError(LedgerError):

    '''Raised when the position or portfolio does not exist in the store.'''

    kind = ErrorKind.NOT_FOUND


class ConflictError(LedgerError):

    '''Raised when the store rejects a write as conflicting, e.g. a duplicate symbol.'''

    kind = ErrorKind.CONFLICT


class PermissionDeniedError(LedgerError):

    '''Raised when the caller may not read or write the resource.'''

    kind = ErrorKind.PERMISSION_DENIED


class ValidationError(LedgerError):

    '''Raised when the store rejects the request body (4xx other than rate limiting).'''

    kind = ErrorKind.VALIDATION


class RateLimitError(LedgerError):

    '''Raised on HTTP 429. The only retryable 4xx.'''

    kind = ErrorKind.RATE_LIMITED
    default_retryable = True


class NetworkFailureError(LedgerError):

    '''Raised when the store could not be reached or the request timed out.'''

    kind = ErrorKind.NETWORK_FAILURE
    default_retryable = True


class ServerFailureError(LedgerError):

    '''Raised on HTTP 5xx or an unclassifiable store failure.'''

    kind = ErrorKind.SERVER_FAILURE
    default_retryable = True


@dataclass(frozen=True)
class ErrorClassification:

    '''
    Taxonomy verdict for an exception.

    Args:
        kind (ErrorKind): Taxonomy tag
        retryable (bool): Whether backoff-and-retry may succeed
        message (str): Original error message
    '''

    kind: ErrorKind
    retryable: bool
    message: str


def as_ledger_error(exc: BaseException) -> LedgerError:

    '''
    Convert any exception into a LedgerError.

    LedgerErrors pass through unchanged. Transport failures (aiohttp,
    OS, timeouts) become NetworkFailureError. Anything else becomes a
    non-retryable ServerFailureError so that programming errors are
    reported rather than retried.

    Args:
        exc (BaseException): Exception to convert

    Returns:
        LedgerError: Typed error carrying the original message
    '''

    if isinstance(exc, LedgerError):
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return NetworkFailureError(message)

    return ServerFailureError(message, retryable=False)


def classify_error(exc: BaseException) -> ErrorClassification:

    '''
    Return the taxonomy tag and retry decision for an exception.

    Args:
        exc (BaseException): Exception raised by a store call or ledger function

    Returns:
        ErrorClassification: Kind, retryable flag, and original message
    '''

    error = as_ledger_error(exc)
    return ErrorClassification(kind=error.kind, retryable=error.retryable, message=error.message)
