'''
Tests for ledgerline.core.errors.
'''

from __future__ import annotations

import asyncio

import aiohttp
import pytest

from ledgerline.core.domain.enums import ErrorKind
from ledgerline.core.errors import (
    ConflictError,
    InvalidQuantityError,
    LedgerError,
    NetworkFailureError,
    OversellingError,
    PermissionDeniedError,
    RateLimitError,
    ServerFailureError,
    ValidationError,
    as_ledger_error,
    classify_error,
)


@pytest.mark.parametrize(
    ('error', 'kind', 'retryable'),
    [
        (InvalidQuantityError('bad'), ErrorKind.INVALID_QUANTITY, False),
        (ConflictError('dup'), ErrorKind.CONFLICT, False),
        (PermissionDeniedError('no'), ErrorKind.PERMISSION_DENIED, False),
        (ValidationError('bad body'), ErrorKind.VALIDATION, False),
        (RateLimitError('slow down'), ErrorKind.RATE_LIMITED, True),
        (NetworkFailureError('down'), ErrorKind.NETWORK_FAILURE, True),
        (ServerFailureError('boom'), ErrorKind.SERVER_FAILURE, True),
    ],
    ids=lambda value: type(value).__name__ if isinstance(value, LedgerError) else None,
)
def test_classification_of_ledger_errors(error: LedgerError, kind: ErrorKind, retryable: bool) -> None:

    verdict = classify_error(error)
    assert verdict.kind is kind
    assert verdict.retryable is retryable
    assert verdict.message == error.message


def test_retryable_override() -> None:

    error = ServerFailureError('malformed', retryable=False)
    assert not classify_error(error).retryable


def test_transport_errors_are_network_failures() -> None:

    for exc in (aiohttp.ClientConnectionError('reset'), asyncio.TimeoutError(), ConnectionRefusedError()):
        error = as_ledger_error(exc)
        assert isinstance(error, NetworkFailureError)
        assert error.retryable


def test_unknown_errors_are_not_retried() -> None:

    error = as_ledger_error(KeyError('surprise'))
    assert isinstance(error, ServerFailureError)
    assert not error.retryable


def test_ledger_error_passes_through() -> None:

    original = ConflictError('dup')
    assert as_ledger_error(original) is original


def test_message_falls_back_to_type_name() -> None:

    assert as_ledger_error(RuntimeError()).message == 'RuntimeError'


def test_overselling_carries_amounts() -> None:

    error = OversellingError(requested=5, available=3)
    assert error.requested == 5
    assert error.available == 3
    assert error.kind is ErrorKind.OVERSELLING


def test_to_dict() -> None:

    error = RateLimitError('slow down', status=429)
    assert error.status == 429
    assert error.to_dict() == {'kind': 'RATE_LIMITED', 'message': 'slow down', 'retryable': True}
