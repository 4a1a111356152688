"""Typed results for tenant-facing operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    LIMIT_REACHED = "LIMIT_REACHED"
    PURCHASE_PENDING = "PURCHASE_PENDING"
    ADDON_ALREADY_ACTIVE = "ADDON_ALREADY_ACTIVE"
    NOT_AN_UPGRADE = "NOT_AN_UPGRADE"
    MODULE_NOT_INCLUDED = "MODULE_NOT_INCLUDED"


@dataclass
class Outcome(Generic[T]):
    """Success value or a business error with a machine-readable kind."""

    ok: bool
    value: T | None = None
    error: ErrorKind | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T | None = None, message: str = "") -> Outcome[T]:
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        message: str,
        **details: Any,
    ) -> Outcome[T]:
        return cls(ok=False, error=error, message=message, details=details)

    def unwrap(self) -> T:
        """Return the value or raise ``ValueError`` for a failed outcome."""
        if not self.ok:
            msg = f"{self.error.value if self.error else 'ERROR'}: {self.message}"
            raise ValueError(msg)
        return self.value  # type: ignore[return-value]
