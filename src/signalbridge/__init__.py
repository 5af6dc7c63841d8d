"""
SignalBridge - real-time signal synchronization for browser-side HMI views.

Keeps a local mirror of backend signals over one WebSocket, evaluates
component bindings against it and forwards writes back to the backend.
"""

from .client import SyncClient
from .config import (
    ConnectionConfig, Environment, LoggingConfig, MqttConfig, SyncConfig,
    configure_logging, default_url,
)
from .core import (
    Binding, BoolValue, NullValue, NumberValue, Quality, Signal, SignalValue,
    StringValue, UNSET, from_python, to_python,
)
from .errors import (
    ConfigurationError, ProtocolError, RemoteError, SignalBridgeError,
    TransformError, TransportError, WriteRejected,
)
from .store import SignalStore
from .sync import (
    ConnectionState, ExponentialBackoff, FixedBackoff, PendingWrite,
    SubscriptionHandle, SubscriptionRegistry,
)
from .binding import BindingEvaluator, compile_transform
from .transport import TransportChannel, WebSocketChannel

__version__ = "0.1.0"

__all__ = [
    # Client
    'SyncClient',

    # Configuration
    'SyncConfig',
    'ConnectionConfig',
    'MqttConfig',
    'LoggingConfig',
    'Environment',
    'configure_logging',
    'default_url',

    # Values
    'Binding',
    'BoolValue',
    'NumberValue',
    'StringValue',
    'NullValue',
    'SignalValue',
    'UNSET',
    'Quality',
    'Signal',
    'from_python',
    'to_python',

    # Components
    'SignalStore',
    'SubscriptionRegistry',
    'SubscriptionHandle',
    'ConnectionState',
    'FixedBackoff',
    'ExponentialBackoff',
    'PendingWrite',
    'BindingEvaluator',
    'compile_transform',
    'TransportChannel',
    'WebSocketChannel',

    # Errors
    'SignalBridgeError',
    'TransportError',
    'ProtocolError',
    'TransformError',
    'WriteRejected',
    'ConfigurationError',
    'RemoteError',
]
