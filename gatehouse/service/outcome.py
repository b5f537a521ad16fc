"""Result values returned by the authentication core.

Core operations never raise for expected failures such as a wrong password
or an expired token. They return an :class:`Outcome` whose ``failure``
carries a stable :class:`ErrorKind`; callers branch on the kind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    EXCHANGE_FAILED = "exchange_failed"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL = "internal"


@dataclass(frozen=True)
class AuthFailure:
    kind: ErrorKind
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls, kind: ErrorKind, message: str, detail: Optional[dict] = None
    ) -> "Outcome[T]":
        return cls(failure=AuthFailure(kind=kind, message=message, detail=detail or {}))

    @classmethod
    def from_failure(cls, failure: AuthFailure) -> "Outcome[T]":
        """Re-wrap an upstream failure under a different value type."""
        return cls(failure=failure)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.failure.kind if self.failure else None


__all__ = ["AuthFailure", "ErrorKind", "Outcome"]
