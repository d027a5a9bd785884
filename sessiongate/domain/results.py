"""Tagged results returned by store calls.

Conditional inserts report ``Created`` or ``AlreadyExists`` instead of raising
on a unique-key collision. Calls that may fail open report ``StoreResult``;
each call site states its own fallback with ``unwrap_or``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True)
class Created(Generic[T]):
    record: T


@dataclass(frozen=True)
class AlreadyExists(Generic[T]):
    # The row that won the race.
    existing: T


InsertOutcome = Union[Created[T], AlreadyExists[T]]


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    ok: bool
    value: T | None = None
    reason: str | None = None

    @classmethod
    def success(cls, value: T) -> "StoreResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def unavailable(cls, reason: str) -> "StoreResult[T]":
        return cls(ok=False, reason=reason)

    def unwrap_or(self, default: T) -> T:
        # Substitute the caller's fail-open default when the store was unavailable.
        if self.ok:
            return self.value  # type: ignore[return-value]
        return default
