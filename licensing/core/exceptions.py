"""Custom exception hierarchy for the licensing engine.

Expected business outcomes (plan not found, limit reached, ...) are returned
as typed results from ``licensing.core.results``. Exceptions are reserved for
infrastructure failures and for programming errors inside the aggregate.
"""

from __future__ import annotations

from typing import Any


class LicensingError(Exception):
    """Base exception for all licensing errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Domain ───────────────────────────────────────────────────────

class NotFoundError(LicensingError):
    """Referenced license, plan, add-on or payment does not exist."""


class InvalidStateError(LicensingError):
    """Transition not allowed from the current license or payment state."""


class LimitExceededError(LicensingError):
    """Usage would exceed the effective limit."""


# ── Gateways ─────────────────────────────────────────────────────

class GatewayError(LicensingError):
    """Provider rejected or failed a request."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, context)
        self.retryable = retryable


class GatewayTimeoutError(GatewayError):
    """Provider call exceeded the configured timeout; outcome unknown."""


class SignatureVerificationError(LicensingError):
    """Webhook or notification signature did not verify."""


# ── Persistence ──────────────────────────────────────────────────

class StorageError(LicensingError):
    """Repository read or write failed."""


class ReconciliationConflictError(StorageError):
    """Optimistic version check failed after every retry was used up."""


class DuplicatePaymentError(StorageError):
    """A payment with the same (gateway, external id) already exists."""
