'''
PendingOperation dataclass representing a locally accepted mutation.

Pending operations are mutable: status, retry_count, and last_error
change as the replay loop works through the durable queue. The
position_id may be a temp- placeholder until the create that produced
it is confirmed.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ledgerline.core.domain._require import _require_aware, _require_str
from ledgerline.core.domain.enums import OperationKind, OperationStatus
from ledgerline.core.domain.position_input import PositionInput, PositionPatch


__all__ = ['PendingOperation']

_TERMINAL_STATUSES: frozenset[OperationStatus] = frozenset({
    OperationStatus.CONFIRMED,
    OperationStatus.FAILED,
})


@dataclass
class PendingOperation:

    '''
    A mutation accepted locally but not yet confirmed by the Position Store.

    Args:
        id (str): Client-generated operation identifier.
        kind (OperationKind): Store call to replay.
        portfolio_id (str): Portfolio owning the target position.
        position_id (str | None): Target position, None for creates.
        payload (PositionInput | PositionPatch | None): Request body, None for deletes.
        created_at (datetime): Acceptance time, must be timezone-aware.
        retry_count (int): Dispatch attempts that ended in a retryable failure.
        status (OperationStatus): Queue lifecycle state.
        last_error (str | None): Message of the most recent failure.
    '''

    id: str
    kind: OperationKind
    portfolio_id: str
    position_id: str | None
    payload: PositionInput | PositionPatch | None
    created_at: datetime
    retry_count: int = 0
    status: OperationStatus = OperationStatus.QUEUED
    last_error: str | None = None

    def __post_init__(self) -> None:

        '''Validate that payload and target match the operation kind.'''

        _require_str('PendingOperation', 'id', self.id)
        _require_str('PendingOperation', 'portfolio_id', self.portfolio_id)
        _require_aware('PendingOperation', 'created_at', self.created_at)

        if self.kind is OperationKind.CREATE_POSITION:
            if not isinstance(self.payload, PositionInput):
                msg = 'PendingOperation CREATE_POSITION requires a PositionInput payload'
                raise ValueError(msg)
        else:
            _require_str('PendingOperation', 'position_id', self.position_id)

        if self.kind is OperationKind.UPDATE_POSITION and not isinstance(self.payload, PositionPatch):
            msg = 'PendingOperation UPDATE_POSITION requires a PositionPatch payload'
            raise ValueError(msg)

        if self.kind is OperationKind.DELETE_POSITION and self.payload is not None:
            msg = 'PendingOperation DELETE_POSITION takes no payload'
            raise ValueError(msg)

        if self.retry_count < 0:
            msg = 'PendingOperation.retry_count must be non-negative'
            raise ValueError(msg)

    @property
    def is_terminal(self) -> bool:

        '''Return True once the operation is confirmed or permanently failed.'''

        return self.status in _TERMINAL_STATUSES

    @property
    def entity_id(self) -> str:

        '''Return the entity used for causal ordering: position id, or portfolio+symbol for creates.'''

        if self.position_id is not None:
            return self.position_id
        if not isinstance(self.payload, PositionInput):
            msg = 'PendingOperation without a position_id needs a PositionInput payload'
            raise TypeError(msg)
        return f'{self.portfolio_id}:{self.payload.symbol}'
