'''
Cache keys for position data.

Keys are tuples of strings ordered from broad to narrow, so that a
shorter tuple used as a pattern matches every key it prefixes. The
canonical serialization is the identity used by the de-duplication
and coalescing maps.
'''

from __future__ import annotations

from typing import TypeAlias

import orjson

__all__ = [
    'QueryKey',
    'canonical',
    'matches',
    'position_all',
    'position_count',
    'position_detail',
    'position_list',
    'position_metrics',
    'portfolio_summary',
    'positions_for_portfolio',
    'recent_transactions',
    'transactions_for_position',
]

QueryKey: TypeAlias = tuple[str, ...]

_POSITIONS = 'positions'
_TRANSACTIONS = 'transactions'
_SUMMARY = 'summary'


def canonical(key: QueryKey) -> str:

    '''
    Serialize a key to its canonical string form.

    Args:
        key (QueryKey): Key or pattern

    Returns:
        str: JSON array text, stable for equal keys
    '''

    return orjson.dumps(list(key)).decode()


def matches(pattern: QueryKey, key: QueryKey) -> bool:

    '''
    Return True if pattern is a prefix of key.

    Args:
        pattern (QueryKey): Prefix pattern, the empty tuple matches everything
        key (QueryKey): Concrete cache key

    Returns:
        bool: Whether key falls under pattern
    '''

    return key[:len(pattern)] == pattern


def position_all() -> QueryKey:

    return (_POSITIONS,)


def positions_for_portfolio(portfolio_id: str) -> QueryKey:

    '''Prefix covering every position key scoped to a portfolio.'''

    return (_POSITIONS, 'portfolio', portfolio_id)


def position_list(portfolio_id: str) -> QueryKey:

    return (*positions_for_portfolio(portfolio_id), 'list')


def position_metrics(portfolio_id: str) -> QueryKey:

    return (*positions_for_portfolio(portfolio_id), 'metrics')


def position_count(portfolio_id: str) -> QueryKey:

    return (*positions_for_portfolio(portfolio_id), 'count')


def portfolio_summary(portfolio_id: str) -> QueryKey:

    return (_SUMMARY, portfolio_id)


def position_detail(position_id: str) -> QueryKey:

    return (_POSITIONS, 'detail', position_id)


def transactions_for_position(position_id: str) -> QueryKey:

    return (_TRANSACTIONS, 'position', position_id)


def recent_transactions() -> QueryKey:

    '''Prefix covering every cached transaction list.'''

    return (_TRANSACTIONS,)
