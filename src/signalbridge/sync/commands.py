"""
Command Channel - Outbound Write Path

Writes are independent of the subscription stream and have no
acknowledgement: success means the frame was placed on an open socket.
A write attempted while not connected raises WriteRejected synchronously and
sends nothing. Nothing is queued or retried here.

Outbound value policy:
- bool, int and finite float are sent as-is
- SignalValue variants are unwrapped first
- None is sent as "null"
- everything else (including NaN/inf) is sent as str(value)
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Union

from ..core.values import (
    UNSET, BoolValue, NullValue, NumberValue, StringValue, is_finite_number, to_python, type_name,
)
from ..errors import WriteRejected
from ..store.signal_store import SignalStore
from ..transport.protocol import batch_set_frame, publish_mqtt_frame, set_signal_frame
from .registry import FrameSink

logger = logging.getLogger(__name__)

RejectionListener = Callable[[WriteRejected], Any]
WireValue = Union[bool, int, float, str]


@dataclass(frozen=True)
class PendingWrite:
    """One write in flight; exists only for the duration of a call"""
    signal: str
    value: WireValue


def coerce_outbound(value: Any) -> WireValue:
    """Apply the outbound type policy to one value."""
    if isinstance(value, (BoolValue, NumberValue, StringValue, NullValue)):
        value = to_python(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return value
    if is_finite_number(value):
        return value
    return str(value)


class CommandChannel:
    """Synchronous success/failure writes through the supervisor."""

    def __init__(self, sink: FrameSink, store: Optional[SignalStore] = None):
        self._sink = sink
        self._store = store
        self._rejection_listeners: List[RejectionListener] = []
        self.writes_sent = 0
        self.writes_rejected = 0

    def on_rejected(self, listener: RejectionListener) -> None:
        """Register a user-notification hook for rejected writes."""
        self._rejection_listeners.append(listener)

    def set_value(self, signal: str, value: Any) -> PendingWrite:
        """
        Write one signal value.

        Raises:
            WriteRejected: If not connected or the frame could not be sent
        """
        write = PendingWrite(signal, coerce_outbound(value))
        self._send(set_signal_frame(write.signal, write.value), signal)
        logger.debug(f"Wrote {signal}={write.value!r}")
        return write

    def batch_set(self, values: Mapping[str, Any]) -> List[PendingWrite]:
        """Write several values in one ``batch_set`` frame."""
        writes = [PendingWrite(name, coerce_outbound(v)) for name, v in values.items()]
        if not writes:
            return []
        frame = batch_set_frame({w.signal: w.value for w in writes})
        self._send(frame, ", ".join(w.signal for w in writes))
        return writes

    def toggle(self, signal: str) -> PendingWrite:
        """Write the negation of the current boolean value of ``signal``."""
        current = self._current(signal)
        match current:
            case BoolValue(v):
                return self.set_value(signal, not v)
            case _:
                raise self._reject(f"Cannot toggle {signal}: current value is {_describe(current)}, not bool", signal)

    def step(self, signal: str, delta: Union[int, float]) -> PendingWrite:
        """Write the current numeric value of ``signal`` plus ``delta``."""
        current = self._current(signal)
        match current:
            case NumberValue(v):
                return self.set_value(signal, v + delta)
            case _:
                raise self._reject(f"Cannot step {signal}: current value is {_describe(current)}, not number", signal)

    def publish_mqtt(self, topic: str, payload: Any) -> None:
        self._send(publish_mqtt_frame(topic, payload), topic)

    def _current(self, signal: str):
        if self._store is None:
            raise self._reject(f"No signal store to read {signal} from", signal)
        return self._store.get(signal)

    def _send(self, frame: Mapping[str, Any], target: str) -> None:
        if not self._sink.connected:
            raise self._reject(f"Not connected; write to {target} rejected", target)
        if not self._sink.send(frame):
            raise self._reject(f"Write to {target} could not be sent", target)
        self.writes_sent += 1

    def _reject(self, message: str, signal: str) -> WriteRejected:
        error = WriteRejected(message, signal=signal)
        self.writes_rejected += 1
        logger.warning(message)
        for listener in list(self._rejection_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Rejection listener failed: {e}", exc_info=True)
        return error


def _describe(current) -> str:
    return "unset" if current is UNSET else type_name(current)
