"""
Transport layer: wire protocol and duplex channels.
"""

from .protocol import (
    InboundMessage,
    SignalUpdateData,
    SignalUpdateMessage,
    BatchUpdateMessage,
    MqttUpdateMessage,
    ErrorMessage,
    ConnectedMessage,
    PongMessage,
    decode_envelope,
    encode_frame,
)
from .channel import TransportChannel
from .websocket import WebSocketChannel

__all__ = [
    'InboundMessage',
    'SignalUpdateData',
    'SignalUpdateMessage',
    'BatchUpdateMessage',
    'MqttUpdateMessage',
    'ErrorMessage',
    'ConnectedMessage',
    'PongMessage',
    'decode_envelope',
    'encode_frame',
    'TransportChannel',
    'WebSocketChannel',
]
