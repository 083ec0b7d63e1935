"""
Result contract for backend capabilities.

Every capability returns ``Ok(value)`` or ``Err(reason)`` instead of raising,
and the coordinator picks the fallback for ``Err`` explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    reason: str

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err
