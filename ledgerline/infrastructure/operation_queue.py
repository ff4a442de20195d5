'''
Durable FIFO queue of pending operations backed by SQLite.

Operations accepted while the Position Store is unreachable are
appended here and survive process restarts. Insertion order is the
replay order: rows are sequenced by an AUTOINCREMENT key and every
write is committed before the call returns.
'''

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import aiosqlite

from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.infrastructure import codec

__all__ = ['OperationQueue', 'SqliteOperationQueue']

_CREATE_TABLE = '''
CREATE TABLE IF NOT EXISTS pending_operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    op_id TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    payload BLOB NOT NULL
)'''

_INSERT = (
    'INSERT INTO pending_operations (op_id, kind, entity_id, created_at, payload) '
    'VALUES (?, ?, ?, ?, ?)'
)

_SELECT = 'SELECT payload FROM pending_operations ORDER BY seq ASC'

_UPDATE = 'UPDATE pending_operations SET entity_id = ?, payload = ? WHERE op_id = ?'

_DELETE = 'DELETE FROM pending_operations WHERE op_id = ?'

_CLEAR = 'DELETE FROM pending_operations'

_COUNT = 'SELECT COUNT(*) FROM pending_operations'


@runtime_checkable
class OperationQueue(Protocol):

    '''Durable FIFO of PendingOperations consumed by the Sync Manager.'''

    async def append(self, op: PendingOperation) -> None:
        ...

    async def list(self) -> list[PendingOperation]:
        ...

    async def update(self, op: PendingOperation) -> None:
        ...

    async def remove(self, op_id: str) -> bool:
        ...

    async def clear(self) -> int:
        ...


class SqliteOperationQueue:

    '''
    Provide the durable queue on a single SQLite table.

    Args:
        conn (aiosqlite.Connection): Database connection
        owns_connection (bool): Close conn in close() when True
    '''

    def __init__(self, conn: aiosqlite.Connection, *, owns_connection: bool = False) -> None:

        '''
        Store the connection.

        Args:
            conn (aiosqlite.Connection): Database connection
            owns_connection (bool): Close conn in close() when True
        '''

        self._conn = conn
        self._owns_connection = owns_connection

    @classmethod
    async def open(cls, path: str) -> SqliteOperationQueue:

        '''
        Open or create the queue database at path.

        Args:
            path (str): SQLite file path, or ':memory:'

        Returns:
            SqliteOperationQueue: Queue with its schema in place
        '''

        conn = await aiosqlite.connect(path)
        queue = cls(conn, owns_connection=True)
        await queue.ensure_schema()
        return queue

    async def close(self) -> None:

        if self._owns_connection:
            await self._conn.close()

    async def __aenter__(self) -> SqliteOperationQueue:

        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:

        await self.close()

    async def ensure_schema(self) -> None:

        '''Create the pending_operations table if it does not exist.'''

        async with self._conn.execute(_CREATE_TABLE):
            pass
        await self._conn.commit()

    async def append(self, op: PendingOperation) -> None:

        '''
        Append op at the tail of the queue.

        Args:
            op (PendingOperation): Operation to persist
        '''

        async with self._conn.execute(
            _INSERT,
            (op.id, op.kind.value, op.entity_id, op.created_at.isoformat(), codec.dumps(op)),
        ):
            pass
        await self._conn.commit()

    async def list(self) -> list[PendingOperation]:

        '''
        Return every queued operation in insertion order.

        Returns:
            list[PendingOperation]: Queue contents, head first
        '''

        async with self._conn.execute(_SELECT) as cursor:
            rows = await cursor.fetchall()
        return [codec.decode(PendingOperation, row[0]) for row in rows]

    async def update(self, op: PendingOperation) -> None:

        '''
        Persist changed fields of a queued operation without moving it.

        Args:
            op (PendingOperation): Operation with updated retry_count, status, or position_id
        '''

        async with self._conn.execute(_UPDATE, (op.entity_id, codec.dumps(op), op.id)) as cursor:
            if cursor.rowcount == 0:
                msg = f'Operation {op.id} is not queued'
                raise KeyError(msg)
        await self._conn.commit()

    async def remove(self, op_id: str) -> bool:

        '''
        Remove an operation.

        Args:
            op_id (str): Operation identifier

        Returns:
            bool: True if the operation was queued
        '''

        async with self._conn.execute(_DELETE, (op_id,)) as cursor:
            removed = cursor.rowcount > 0
        await self._conn.commit()
        return removed

    async def clear(self) -> int:

        '''
        Remove every queued operation.

        Returns:
            int: Number of operations removed
        '''

        async with self._conn.execute(_CLEAR) as cursor:
            removed = cursor.rowcount
        await self._conn.commit()
        return removed

    async def count(self) -> int:

        async with self._conn.execute(_COUNT) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0
