'''
Validate construction-time invariants shared by domain dataclasses.

Helpers raise ValueError with a `Class.field` prefix so that a bad
record is rejected where it is built, not where it is first used.
'''

from __future__ import annotations

from datetime import datetime

__all__ = ['_require_aware', '_require_str']


def _require_str(cls: str, field: str, value: str | None, *, optional: bool = False) -> None:

    '''
    Validate that a string field is non-empty.

    Args:
        cls (str): Class name for error context.
        field (str): Field name for error context.
        value (str | None): Value to validate.
        optional (bool): Allow None values when True.
    '''

    if value is None and optional:
        return

    if not value or not isinstance(value, str):
        msg = f'{cls}.{field} must be a non-empty string'
        raise ValueError(msg)


def _require_aware(cls: str, field: str, value: datetime | None, *, optional: bool = False) -> None:

    '''
    Validate that a datetime field carries a timezone.

    Args:
        cls (str): Class name for error context.
        field (str): Field name for error context.
        value (datetime | None): Value to validate.
        optional (bool): Allow None values when True.
    '''

    if value is None and optional:
        return

    if value is None or value.tzinfo is None or value.utcoffset() is None:
        msg = f'{cls}.{field} must be timezone-aware'
        raise ValueError(msg)
