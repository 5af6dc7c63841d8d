"""
Core domain types: signal values, signal records and bindings.
"""

from .values import (
    BoolValue, NumberValue, StringValue, NullValue, SignalValue,
    UNSET, from_python, to_python, decode_wire_value,
)
from .signal import Quality, Signal
from .binding import Binding

__all__ = [
    'BoolValue',
    'NumberValue',
    'StringValue',
    'NullValue',
    'SignalValue',
    'UNSET',
    'from_python',
    'to_python',
    'decode_wire_value',
    'Quality',
    'Signal',
    'Binding',
]
