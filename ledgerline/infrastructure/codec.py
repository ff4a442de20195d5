'''
JSON codec for Ledgerline domain dataclasses.

Serialize dataclasses with orjson and rebuild them from decoded JSON
using their type annotations, so Decimal, datetime, Enum, and nested
dataclass fields round-trip without loss.
'''

from __future__ import annotations

import dataclasses
import enum
import types
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar, Union, get_args, get_origin, get_type_hints

import orjson

__all__ = ['decode', 'dumps', 'from_dict', 'loads', 'to_dict']

T = TypeVar('T')


def _serialize_default(obj: Any) -> Any:

    '''
    Serialize Decimal to string for orjson.

    Args:
        obj (Any): Object that orjson cannot serialize natively

    Returns:
        Any: JSON-serializable representation
    '''

    if isinstance(obj, Decimal):
        return str(obj)
    msg = f'Object of type {type(obj).__name__} is not JSON serializable'
    raise TypeError(msg)


def _coerce(value: Any, target: Any) -> Any:

    '''
    Coerce a decoded JSON value to the annotated Python type.

    Args:
        value (Any): Raw value from orjson.loads
        target (Any): Annotation of the receiving field

    Returns:
        Any: Value coerced to the target type
    '''

    if value is None:
        return None

    origin = get_origin(target)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(target) if a is not type(None)]
        if isinstance(value, dict):
            for arg in args:
                if dataclasses.is_dataclass(arg) and set(value) == {f.name for f in dataclasses.fields(arg)}:
                    return from_dict(arg, value)
        return _coerce(value, args[0]) if args else value

    if origin is list:
        (item,) = get_args(target) or (Any,)
        return [_coerce(v, item) for v in value]

    if target is Decimal:
        return Decimal(str(value))

    if target is datetime:
        return datetime.fromisoformat(str(value))

    if isinstance(target, type) and issubclass(target, enum.Enum):
        return target(value)

    if isinstance(target, type) and dataclasses.is_dataclass(target) and isinstance(value, dict):
        return from_dict(target, value)

    return value


def to_dict(obj: Any) -> dict[str, Any]:

    '''
    Convert a dataclass to a JSON-ready dict.

    Args:
        obj (Any): Dataclass instance

    Returns:
        dict[str, Any]: Field values with Decimal as str, datetime as ISO 8601, Enum as value
    '''

    decoded: dict[str, Any] = orjson.loads(dumps(obj))
    return decoded


def from_dict(cls: type[T], raw: dict[str, Any]) -> T:

    '''
    Rebuild a dataclass from a decoded JSON dict.

    Unknown keys are ignored so that store responses may carry extra fields.

    Args:
        cls (type[T]): Dataclass to build
        raw (dict[str, Any]): Decoded JSON object

    Returns:
        T: Validated instance
    '''

    hints = get_type_hints(cls)
    names = {f.name for f in dataclasses.fields(cls) if f.init}  # type: ignore[arg-type]
    coerced = {k: _coerce(v, hints[k]) for k, v in raw.items() if k in names}
    return cls(**coerced)


def dumps(obj: Any) -> bytes:

    '''
    Serialize a dataclass, or a list of them, to JSON bytes.

    Args:
        obj (Any): Value to serialize

    Returns:
        bytes: JSON document
    '''

    return orjson.dumps(obj, default=_serialize_default)


def loads(data: bytes | str) -> Any:

    return orjson.loads(data)


def decode(cls: type[T], data: bytes | str) -> T:

    '''
    Parse JSON text into a dataclass.

    Args:
        cls (type[T]): Dataclass to build
        data (bytes | str): JSON object text

    Returns:
        T: Validated instance
    '''

    raw = orjson.loads(data)
    if not isinstance(raw, dict):
        msg = f'Expected a JSON object for {cls.__name__}, got {type(raw).__name__}'
        raise ValueError(msg)
    return from_dict(cls, raw)
