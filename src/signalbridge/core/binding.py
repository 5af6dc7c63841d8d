"""
Binding declarations.

A Binding links one signal to one property of one visual component. The
optional ``transform`` is an expression in the package's own transform
language (see ``signalbridge.binding.transform``); ``format`` is a Python
format spec applied to the (transformed) value.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

MAX_FORMAT_WIDTH = 200

_DIGITS = re.compile(r"\d+")


class Binding(BaseModel):
    """Declarative link {property, signal, optional transform, optional format}"""

    model_config = ConfigDict(frozen=True)

    property: str
    signal: str
    transform: Optional[str] = None
    format: Optional[str] = None

    @field_validator("property", "signal")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("transform", "format")
    @classmethod
    def _empty_is_none(cls, v: Optional[str]) -> Optional[str]:
        # The designer stores an unset transform as ""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("format")
    @classmethod
    def _bounded_width(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and any(int(n) > MAX_FORMAT_WIDTH for n in _DIGITS.findall(v)):
            raise ValueError(f"width and precision must not exceed {MAX_FORMAT_WIDTH}")
        return v
