"""
Wire Protocol - JSON Message Envelopes

Every frame on the socket is a JSON object with a ``type`` discriminator.

Inbound (backend → client)::

    {"type": "signal_update", "data": {"signal", "value", "quality"?, "timestamp"?}}
    {"type": "batch_update", "updates": [{"signal", "value", ...}, ...]}
    {"type": "mqtt_update", "data": {"topic", "payload", "timestamp"?}}
    {"type": "error", "error": "..."}
    {"type": "connected", "version"?: "..."}
    {"type": "pong", "timestamp"?: ms}

Outbound (client → backend) frames are built by the ``*_frame`` helpers at
the bottom of this module.

Decoding failures of any kind surface as ProtocolError so the channel can log
and drop the frame.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ..core.signal import Quality, Signal, now_ms
from ..core.values import SignalValue, decode_wire_value
from ..errors import ProtocolError


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SignalUpdateData(_Frame):
    signal: str
    value: Any
    quality: Optional[str] = None
    timestamp: Optional[float] = None
    source: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _decode_value(cls, v: Any) -> SignalValue:
        try:
            return decode_wire_value(v)
        except ProtocolError as e:
            raise ValueError(str(e)) from e

    @field_validator("quality")
    @classmethod
    def _known_quality(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            return Quality.parse(v).value
        except ValueError as e:
            raise ValueError(f"unknown quality {v!r}") from e

    def to_signal(self) -> Signal:
        return Signal(
            name=self.signal,
            value=self.value,
            quality=Quality.parse(self.quality),
            timestamp=int(self.timestamp) if self.timestamp is not None else now_ms(),
        )


class MqttUpdateData(_Frame):
    topic: str
    payload: Any = None
    timestamp: Optional[float] = None


class SignalUpdateMessage(_Frame):
    type: Literal["signal_update"]
    data: SignalUpdateData


class BatchUpdateMessage(_Frame):
    type: Literal["batch_update"]
    updates: List[SignalUpdateData] = Field(default_factory=list)


class MqttUpdateMessage(_Frame):
    type: Literal["mqtt_update"]
    data: MqttUpdateData


class ErrorMessage(_Frame):
    type: Literal["error"]
    error: str = "unknown error"


class ConnectedMessage(_Frame):
    type: Literal["connected"]
    version: Optional[str] = None


class PongMessage(_Frame):
    type: Literal["pong"]
    timestamp: Optional[float] = None


InboundMessage = Annotated[
    Union[
        SignalUpdateMessage,
        BatchUpdateMessage,
        MqttUpdateMessage,
        ErrorMessage,
        ConnectedMessage,
        PongMessage,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset({
    "signal_update", "batch_update", "mqtt_update", "error", "connected", "pong",
})

_inbound_adapter = TypeAdapter(InboundMessage)


def decode_envelope(raw: Union[str, bytes]) -> InboundMessage:
    """
    Decode one inbound frame.

    Raises:
        ProtocolError: On invalid JSON, unknown ``type`` or invalid payload
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}", raw=text) from e

    if not isinstance(payload, dict):
        raise ProtocolError("Frame is not a JSON object", raw=text)

    msg_type = payload.get("type")
    if msg_type not in INBOUND_TYPES:
        raise ProtocolError(f"Unrecognized message type: {msg_type!r}", raw=text)

    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {msg_type} frame: {e.error_count()} error(s)", raw=text) from e


def encode_frame(message: Mapping[str, Any]) -> str:
    return json.dumps(dict(message), separators=(",", ":"), allow_nan=False)


# Outbound frame builders

def subscribe_frame(signal: str) -> Dict[str, Any]:
    return {"type": "subscribe_signal", "signal": signal}


def unsubscribe_frame(signal: str) -> Dict[str, Any]:
    return {"type": "unsubscribe_signal", "signal": signal}


def set_signal_frame(signal: str, value: Any) -> Dict[str, Any]:
    return {"type": "set_signal", "signal": signal, "value": value}


def batch_set_frame(values: Mapping[str, Any], timestamp: Optional[int] = None) -> Dict[str, Any]:
    ts = timestamp if timestamp is not None else now_ms()
    return {
        "type": "batch_set",
        "updates": [
            {"signal": name, "value": value, "timestamp": ts}
            for name, value in values.items()
        ],
    }


def ping_frame(timestamp: Optional[int] = None) -> Dict[str, Any]:
    return {"type": "ping", "timestamp": timestamp if timestamp is not None else now_ms()}


def subscribe_mqtt_frame(topic: str) -> Dict[str, Any]:
    return {"type": "subscribe_mqtt", "topic": topic}


def unsubscribe_mqtt_frame(topic: str) -> Dict[str, Any]:
    return {"type": "unsubscribe_mqtt", "topic": topic}


def publish_mqtt_frame(topic: str, payload: Any) -> Dict[str, Any]:
    return {"type": "publish_mqtt", "topic": topic, "payload": payload}
