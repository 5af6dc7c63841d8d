"""
Synchronization layer: connection supervision, subscriptions and writes.
"""

from .backoff import BackoffPolicy, FixedBackoff, ExponentialBackoff, make_backoff
from .registry import SubscriptionRegistry, SubscriptionHandle, FrameSink
from .supervisor import ReconnectSupervisor, ConnectionState, ConnectionStatus
from .commands import CommandChannel, PendingWrite, coerce_outbound

__all__ = [
    'BackoffPolicy',
    'FixedBackoff',
    'ExponentialBackoff',
    'make_backoff',
    'SubscriptionRegistry',
    'SubscriptionHandle',
    'FrameSink',
    'ReconnectSupervisor',
    'ConnectionState',
    'ConnectionStatus',
    'CommandChannel',
    'PendingWrite',
    'coerce_outbound',
]
