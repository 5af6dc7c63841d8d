"""
Reconnect backoff policies.
"""

import random
from abc import ABC, abstractmethod

from ..errors import ConfigurationError


class BackoffPolicy(ABC):
    """Maps a 1-based attempt number to a delay in seconds."""

    @abstractmethod
    def delay(self, attempt: int) -> float:
        pass


class FixedBackoff(BackoffPolicy):
    """Same interval before every attempt."""

    def __init__(self, interval: float):
        if interval < 0:
            raise ConfigurationError("Backoff interval must be >= 0")
        self.interval = interval

    def delay(self, attempt: int) -> float:
        return self.interval


class ExponentialBackoff(BackoffPolicy):
    """
    interval * 2^(attempt-1), capped at ``maximum``.

    ``jitter`` is a fraction (0..1) of the delay randomly subtracted so many
    clients that lost the same backend do not reconnect in lockstep.
    """

    def __init__(self, interval: float, maximum: float = 60.0, jitter: float = 0.0, rng: random.Random = None):
        if interval < 0 or maximum < 0:
            raise ConfigurationError("Backoff interval and maximum must be >= 0")
        if not 0.0 <= jitter <= 1.0:
            raise ConfigurationError("Backoff jitter must be between 0 and 1")
        self.interval = interval
        self.maximum = maximum
        self.jitter = jitter
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        exponent = max(attempt - 1, 0)
        # Cap the exponent to avoid huge floats on long outages
        base = min(self.interval * (2 ** min(exponent, 32)), self.maximum)
        if self.jitter:
            base -= base * self.jitter * self._rng.random()
        return base


def make_backoff(policy: str, interval: float, maximum: float = 60.0, jitter: float = 0.0) -> BackoffPolicy:
    match policy:
        case "fixed":
            return FixedBackoff(interval)
        case "exponential":
            return ExponentialBackoff(interval, maximum=maximum, jitter=jitter)
        case _:
            raise ConfigurationError(f"Unknown backoff policy: {policy!r}")
