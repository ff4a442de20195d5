'''
Push event dataclasses for the Ledgerline real-time channel.

Represent remote changes emitted by the Position Store's push channel
and merged into the cache by the Sync Manager. Each event is an
immutable fact carrying the portfolio scope it was published under.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, TypeAlias

from ledgerline.core.domain._require import _require_aware, _require_str
from ledgerline.core.domain.enums import EntityKind
from ledgerline.core.domain.position import Position
from ledgerline.core.domain.transaction import Transaction

__all__ = [
    'PositionChanged',
    'PositionRemoved',
    'PushEvent',
    'TransactionRecorded',
]


@dataclass(frozen=True)
class _PushBase:

    '''
    Represent shared fields for all push events.

    Args:
        portfolio_id (str): Portfolio scope the event was published under.
        timestamp (datetime): Publish time, must be timezone-aware.
    '''

    entity_kind: ClassVar[EntityKind]

    portfolio_id: str
    timestamp: datetime

    def __post_init__(self) -> None:

        name = type(self).__name__
        _require_str(name, 'portfolio_id', self.portfolio_id)
        _require_aware(name, 'timestamp', self.timestamp)


@dataclass(frozen=True)
class PositionChanged(_PushBase):

    '''
    Represent an inserted or updated position.

    Args:
        portfolio_id (str): Portfolio scope the event was published under.
        timestamp (datetime): Publish time, must be timezone-aware.
        record (Position): Full server record after the change.
    '''

    entity_kind: ClassVar[EntityKind] = EntityKind.POSITION

    record: Position

    def __post_init__(self) -> None:

        super().__post_init__()

        if self.record.portfolio_id != self.portfolio_id:
            msg = 'PositionChanged.record belongs to a different portfolio'
            raise ValueError(msg)


@dataclass(frozen=True)
class PositionRemoved(_PushBase):

    '''
    Represent a deleted or fully sold position.

    Args:
        portfolio_id (str): Portfolio scope the event was published under.
        timestamp (datetime): Publish time, must be timezone-aware.
        position_id (str): Identifier of the removed position.
    '''

    entity_kind: ClassVar[EntityKind] = EntityKind.POSITION

    position_id: str

    def __post_init__(self) -> None:

        super().__post_init__()
        _require_str('PositionRemoved', 'position_id', self.position_id)


@dataclass(frozen=True)
class TransactionRecorded(_PushBase):

    '''
    Represent a newly recorded transaction.

    Args:
        portfolio_id (str): Portfolio scope the event was published under.
        timestamp (datetime): Publish time, must be timezone-aware.
        record (Transaction): The appended transaction.
    '''

    entity_kind: ClassVar[EntityKind] = EntityKind.TRANSACTION

    record: Transaction


PushEvent: TypeAlias = PositionChanged | PositionRemoved | TransactionRecorded
