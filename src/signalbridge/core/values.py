"""
Signal Values - Tagged Variant

Signal values arrive from the backend either as plain JSON primitives or as
adjacently tagged objects (``{"type": "Float", "value": 12.5}``). Both forms
are normalized into one of four immutable variants so consumers never have
to guess the type of a value at the use site:

- BoolValue
- NumberValue (int or float)
- StringValue
- NullValue

Consumers are expected to ``match`` exhaustively over the variants, as
``to_python`` below does.
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping, Union

from ..errors import ProtocolError


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class NumberValue:
    value: Union[int, float]


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class NullValue:
    pass


SignalValue = Union[BoolValue, NumberValue, StringValue, NullValue]


class _Unset:
    """Sentinel for signals that have never received an update"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()
Unset = _Unset

# Tags used by the backend's adjacently tagged value encoding
_TAGS = {
    "bool": "bool",
    "int": "number",
    "integer": "number",
    "float": "number",
    "number": "number",
    "string": "string",
    "str": "string",
    "null": "null",
    "none": "null",
}


def from_python(raw: Any) -> SignalValue:
    """
    Build a SignalValue from a plain Python value.

    ``bool`` is checked before ``int`` since it is a subclass of it.

    Raises:
        TypeError: If the value has no signal representation
    """
    if raw is None:
        return NullValue()
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, (int, float)):
        return NumberValue(raw)
    if isinstance(raw, str):
        return StringValue(raw)
    if isinstance(raw, (BoolValue, NumberValue, StringValue, NullValue)):
        return raw
    raise TypeError(f"Unsupported signal value type: {type(raw).__name__}")


def to_python(value: SignalValue) -> Any:
    """Unwrap a SignalValue into the matching plain Python value."""
    match value:
        case BoolValue(v):
            return v
        case NumberValue(v):
            return v
        case StringValue(v):
            return v
        case NullValue():
            return None
        case _:
            raise TypeError(f"Not a signal value: {value!r}")


def type_name(value: SignalValue) -> str:
    match value:
        case BoolValue():
            return "bool"
        case NumberValue():
            return "number"
        case StringValue():
            return "string"
        case NullValue():
            return "null"
        case _:
            raise TypeError(f"Not a signal value: {value!r}")


def decode_wire_value(raw: Any) -> SignalValue:
    """
    Decode a value as it appears in an inbound frame.

    Accepts plain primitives and ``{"type": ..., "value": ...}`` objects.

    Raises:
        ProtocolError: If the value cannot be represented
    """
    if isinstance(raw, Mapping):
        if "type" not in raw:
            raise ProtocolError(f"Tagged value without type: {raw!r}")
        tag = _TAGS.get(str(raw["type"]).lower())
        inner = raw.get("value")
        if tag is None:
            raise ProtocolError(f"Unknown value tag: {raw['type']!r}")
        if tag == "null":
            return NullValue()
        if tag == "bool" and isinstance(inner, bool):
            return BoolValue(inner)
        if tag == "number" and isinstance(inner, (int, float)) and not isinstance(inner, bool):
            return NumberValue(inner)
        if tag == "string" and isinstance(inner, str):
            return StringValue(inner)
        raise ProtocolError(f"Tagged value does not match its tag: {raw!r}")

    try:
        return from_python(raw)
    except TypeError as e:
        raise ProtocolError(str(e)) from e


def is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
