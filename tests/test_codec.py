'''
Tests for ledgerline.infrastructure.codec.
'''

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledgerline.core.domain.enums import OperationKind, TransactionType
from ledgerline.core.domain.pending_operation import PendingOperation
from ledgerline.core.domain.position import Position
from ledgerline.core.domain.position_input import PositionInput, PositionPatch
from ledgerline.core.domain.transaction import Transaction
from ledgerline.infrastructure import codec

_TS = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def _position() -> Position:

    return Position(
        id='pos-1',
        portfolio_id='pf-1',
        symbol='AAPL',
        quantity=Decimal('3'),
        average_cost=Decimal('0.1'),
        total_invested=Decimal('0.3'),
        created_at=_TS,
        updated_at=_TS,
    )


class TestEncoding:

    def test_decimals_encoded_as_strings(self) -> None:

        raw = codec.to_dict(_position())

        assert raw['quantity'] == '3'
        assert raw['average_cost'] == '0.1'
        assert raw['created_at'].startswith('2026-03-01T09:30:00')
        assert raw['current_price'] is None

    def test_enum_encoded_by_value(self) -> None:

        txn = Transaction(
            id='txn-1',
            position_id='pos-1',
            type=TransactionType.SELL,
            quantity=Decimal(1),
            price=Decimal(2),
            transaction_date=_TS,
            created_at=_TS,
        )

        assert codec.to_dict(txn)['type'] == TransactionType.SELL.value

    def test_unsupported_type(self) -> None:

        with pytest.raises(TypeError):
            codec.dumps({'value': object()})


class TestDecoding:

    def test_position_is_exact(self) -> None:

        decoded = codec.decode(Position, codec.dumps(_position()))

        assert decoded == _position()
        assert decoded.total_invested == Decimal('0.3')
        assert decoded.created_at.tzinfo is not None

    def test_numbers_accepted_for_decimals(self) -> None:

        raw = codec.to_dict(_position())
        raw['quantity'] = 3
        raw['current_price'] = 1.25

        decoded = codec.from_dict(Position, raw)

        assert decoded.quantity == Decimal(3)
        assert decoded.current_price == Decimal('1.25')

    def test_unknown_keys_ignored(self) -> None:

        raw = codec.to_dict(_position())
        raw['sector'] = 'tech'

        assert codec.from_dict(Position, raw) == _position()

    def test_union_payload_resolved_by_fields(self) -> None:

        patch_op = PendingOperation(
            id='op-1',
            kind=OperationKind.UPDATE_POSITION,
            portfolio_id='pf-1',
            position_id='pos-1',
            payload=PositionPatch(name='Apple'),
            created_at=_TS,
        )
        create_op = PendingOperation(
            id='op-2',
            kind=OperationKind.CREATE_POSITION,
            portfolio_id='pf-1',
            position_id='temp-1',
            payload=PositionInput(portfolio_id='pf-1', symbol='AAPL', quantity=Decimal(1), price=Decimal(2)),
            created_at=_TS,
        )

        assert codec.decode(PendingOperation, codec.dumps(patch_op)) == patch_op
        assert codec.decode(PendingOperation, codec.dumps(create_op)) == create_op

    def test_list_of_dataclasses(self) -> None:

        [decoded] = [codec.from_dict(Position, item) for item in codec.loads(codec.dumps([_position()]))]

        assert decoded == _position()

    def test_non_object_rejected(self) -> None:

        with pytest.raises(ValueError, match='Expected a JSON object'):
            codec.decode(Position, b'[]')
