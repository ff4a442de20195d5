'''
Position Store adapter for a JSON REST backend.

Handle session management, request encoding, response decoding, and
mapping of HTTP status codes onto the LedgerError taxonomy. Retrying is
left to the caller so that the optimistic and replay paths control
their own retry policy.
'''

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ledgerline.core.domain.position import Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.transaction import Transaction
from ledgerline.core.errors import (
    ConflictError,
    LedgerError,
    NetworkFailureError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServerFailureError,
    ValidationError,
)
from ledgerline.infrastructure import codec

__all__ = ['HttpPositionStore']

_HTTP_NO_CONTENT = 204
_HTTP_BAD_REQUEST = 400
_HTTP_UNAUTHORIZED = 401
_HTTP_FORBIDDEN = 403
_HTTP_NOT_FOUND = 404
_HTTP_CONFLICT = 409
_HTTP_UNPROCESSABLE = 422
_HTTP_TOO_MANY = 429
_HTTP_SERVER_ERROR = 500
_JSON_HEADERS = {'Content-Type': 'application/json', 'Accept': 'application/json'}

_log = logging.getLogger(__name__)

_STATUS_ERRORS: dict[int, type[LedgerError]] = {
    _HTTP_BAD_REQUEST: ValidationError,
    _HTTP_UNPROCESSABLE: ValidationError,
    _HTTP_UNAUTHORIZED: PermissionDeniedError,
    _HTTP_FORBIDDEN: PermissionDeniedError,
    _HTTP_NOT_FOUND: NotFoundError,
    _HTTP_CONFLICT: ConflictError,
    _HTTP_TOO_MANY: RateLimitError,
}


class HttpPositionStore:

    '''
    REST implementation of the PositionStore protocol.

    Args:
        base_url (str): Store API base URL
        timeout (float): Total per-request timeout in seconds
        headers (dict[str, str] | None): Extra headers sent with every request, e.g. authorization
    '''

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:

        '''
        Store configuration and initialise empty session.

        Args:
            base_url (str): Store API base URL
            timeout (float): Total per-request timeout in seconds
            headers (dict[str, str] | None): Extra request headers
        '''

        self._base_url = base_url.rstrip('/')
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers = {**_JSON_HEADERS, **(headers or {})}
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> HttpPositionStore:

        '''
        Create the HTTP session on context manager entry.

        Returns:
            HttpPositionStore: Self for use in async with block
        '''

        await self._ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:

        '''Close the HTTP session on context manager exit.'''

        await self.close()

    async def close(self) -> None:

        '''Close the HTTP session if it exists.'''

        if self._session:
            session = self._session
            self._session = None
            if not session.closed:
                await session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
        return self._session

    async def _request(self, method: str, path: str, body: Any = None) -> Any:

        '''
        Execute a request and return the decoded JSON body.

        Args:
            method (str): HTTP method
            path (str): Path below the base URL
            body (Any): Dataclass sent as the JSON request body

        Returns:
            Any: Decoded response body, None for 204 responses
        '''

        session = await self._ensure_session()
        data = codec.dumps(body) if body is not None else None

        try:
            async with session.request(method, f'{self._base_url}{path}', data=data) as response:
                await self._raise_on_error(response)
                if response.status == _HTTP_NO_CONTENT:
                    return None
                return await response.json(content_type=None)
        except LedgerError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            _log.warning('Transport error on %s %s: %s', method, path, exc)
            msg = f'Request failed: {exc}'
            raise NetworkFailureError(msg) from exc
        except ValueError as exc:
            msg = f'Malformed response to {method} {path}: {exc}'
            raise ServerFailureError(msg, retryable=False) from exc

    async def _raise_on_error(self, response: aiohttp.ClientResponse) -> None:

        '''
        Raise the LedgerError matching a failed HTTP status.

        Args:
            response (aiohttp.ClientResponse): HTTP response to inspect
        '''

        if response.status < _HTTP_BAD_REQUEST:
            return

        try:
            body = await response.json(content_type=None)
            reason = str(body.get('message') or body.get('error') or f'HTTP {response.status}')
        except (ValueError, AttributeError, aiohttp.ContentTypeError):
            reason = f'HTTP {response.status}'

        if response.status >= _HTTP_SERVER_ERROR:
            msg = f'Store server error: {reason}'
            raise ServerFailureError(msg, status=response.status)

        error = _STATUS_ERRORS.get(response.status, ValidationError)
        raise error(reason, status=response.status)

    async def fetch_positions(self, portfolio_id: str) -> list[Position]:

        data = await self._request('GET', f'/portfolios/{portfolio_id}/positions')
        return [codec.from_dict(Position, row) for row in data]

    async def fetch_position(self, position_id: str) -> Position:

        data = await self._request('GET', f'/positions/{position_id}')
        return codec.from_dict(Position, data)

    async def create_position(self, data: PositionInput) -> Position:

        '''
        Record a purchase via POST /positions.

        Args:
            data (PositionInput): Purchase to record

        Returns:
            Position: Store record after the purchase
        '''

        body = await self._request('POST', '/positions', data)
        return codec.from_dict(Position, body)

    async def update_position(self, position_id: str, patch: PositionPatch) -> Position | None:

        '''
        Edit a position via PATCH /positions/{id}.

        Args:
            position_id (str): Position identifier
            patch (PositionPatch): Edit to apply

        Returns:
            Position | None: Store record, None when the store answers 204 for a closed position
        '''

        body = await self._request('PATCH', f'/positions/{position_id}', patch)
        if body is None:
            return None
        return codec.from_dict(Position, body)

    async def delete_position(self, position_id: str) -> None:

        await self._request('DELETE', f'/positions/{position_id}')

    async def fetch_transactions(self, position_id: str) -> list[Transaction]:

        data = await self._request('GET', f'/positions/{position_id}/transactions')
        return [codec.from_dict(Transaction, row) for row in data]
