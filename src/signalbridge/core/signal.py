"""
Signal records held by the SignalStore.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .values import SignalValue, to_python


class Quality(Enum):
    """Quality flag carried alongside every signal value"""
    GOOD = "good"
    BAD = "bad"
    UNCERTAIN = "uncertain"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Quality":
        """Map a wire quality string to a Quality; missing means good."""
        if raw is None:
            return cls.GOOD
        return cls(str(raw).lower())


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Signal:
    """
    Latest known state of one external signal.

    Instances are immutable; every inbound update replaces the record.
    """
    name: str
    value: SignalValue
    quality: Quality = Quality.GOOD
    timestamp: int = field(default_factory=now_ms)

    @property
    def raw(self) -> Any:
        """Plain Python form of the value"""
        return to_python(self.value)

    @property
    def is_good(self) -> bool:
        return self.quality is Quality.GOOD
