"""
SignalBridge Error Taxonomy

Every failure the synchronization layer can produce maps onto one of these
classes. None of them is allowed to take down the host process:

- TransportError: socket-level failure, drives the reconnection path and is
  only ever surfaced as ``connected == False``.
- ProtocolError: malformed or unrecognized envelope, logged and dropped.
- TransformError: a binding expression failed, recovered by the evaluator.
- WriteRejected: a write attempted while not connected, raised to the caller.
- ConfigurationError: invalid configuration values.
- RemoteError: an error reported by the backend, forwarded to listeners.
"""

from typing import Optional


class SignalBridgeError(Exception):
    """Base exception for signalbridge errors"""
    pass


class TransportError(SignalBridgeError):
    """Raised by transport channels when the socket cannot be used"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ProtocolError(SignalBridgeError):
    """Raised when an inbound frame cannot be decoded"""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class TransformError(SignalBridgeError):
    """Raised when a transform expression fails to parse or evaluate"""

    def __init__(self, message: str, expression: Optional[str] = None, position: Optional[int] = None):
        super().__init__(message)
        self.expression = expression
        self.position = position


class WriteRejected(SignalBridgeError):
    """Raised when a write cannot be placed on an open socket"""

    def __init__(self, message: str, signal: Optional[str] = None):
        super().__init__(message)
        self.signal = signal


class ConfigurationError(SignalBridgeError):
    """Raised for invalid configuration values"""
    pass


class RemoteError(SignalBridgeError):
    """An ``error`` frame reported by the backend"""
    pass
