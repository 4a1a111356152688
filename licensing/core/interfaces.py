"""Abstract base classes: repositories, collaborators and gateway adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from licensing.core.types import (
    Company,
    Gateway,
    InvoiceRef,
    Payment,
    PaymentConcept,
    PaymentEvent,
    PaymentOutcome,
    PurchaseInitiation,
    SubscriptionEvent,
    UsageKey,
)

if TYPE_CHECKING:
    from licensing.billing.invoicing import Invoice
    from licensing.billing.summary import BillingSummary
    from licensing.catalog.models import AddOn, Plan
    from licensing.licenses.license import License


# ── Repositories ─────────────────────────────────────────────────

class LicenseRepository(ABC):
    """License storage. Usage counters are stored apart from the record.

    ``save`` never writes usage: counters only move through the atomic
    ``increment_usage`` / ``set_usage`` / ``reset_usage`` operations, so a
    license read before an increment cannot overwrite it.
    """

    @abstractmethod
    async def get(self, company_id: str) -> License | None: ...

    @abstractmethod
    async def create(self, license: License) -> License: ...

    @abstractmethod
    async def save(self, license: License) -> License:
        """Persist if ``license.version`` is current; bump the version.

        Raises ``ReconciliationConflictError`` on a stale version.
        """
        ...

    @abstractmethod
    async def list_company_ids(self) -> list[str]: ...

    @abstractmethod
    async def find_by_subscription(self, gateway: Gateway, external_id: str) -> License | None: ...

    @abstractmethod
    async def increment_usage(
        self, company_id: str, key: UsageKey, amount: int | float = 1
    ) -> int | float:
        """Atomically add ``amount`` (may be negative; floored at 0)."""
        ...

    @abstractmethod
    async def set_usage(self, company_id: str, key: UsageKey, value: int | float) -> None: ...

    @abstractmethod
    async def reset_usage(self, keys: Sequence[UsageKey]) -> int:
        """Zero ``keys`` for every tenant. Returns the number of tenants touched."""
        ...


class PaymentRepository(ABC):
    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """Raises ``DuplicatePaymentError`` on a (gateway, external id) clash."""
        ...

    @abstractmethod
    async def get(self, payment_id: str) -> Payment | None: ...

    @abstractmethod
    async def find_by_external(self, gateway: Gateway, external_id: str) -> Payment | None: ...

    @abstractmethod
    async def save(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def list_unresolved(self, created_before: datetime) -> list[Payment]:
        """Pending or processing payments created before the cut-off."""
        ...

    @abstractmethod
    async def list_for_company(self, company_id: str, limit: int = 50) -> list[Payment]:
        """Most recent payments of one company, newest first."""
        ...


class InvoiceRepository(ABC):
    @abstractmethod
    async def next_number(self, series: str) -> int: ...

    @abstractmethod
    async def create(self, invoice: Invoice) -> Invoice: ...

    @abstractmethod
    async def get(self, invoice_id: str) -> Invoice | None: ...

    @abstractmethod
    async def find_by_payment(self, payment_id: str) -> Invoice | None: ...

    @abstractmethod
    async def save(self, invoice: Invoice) -> Invoice: ...


class CatalogRepository(ABC):
    @abstractmethod
    async def list_plans(self) -> list[Plan]: ...

    @abstractmethod
    async def list_addons(self) -> list[AddOn]: ...

    @abstractmethod
    async def upsert_plan(self, plan: Plan) -> Plan: ...

    @abstractmethod
    async def upsert_addon(self, addon: AddOn) -> AddOn: ...


class LicensingStore(ABC):
    """Bundle of repositories plus the atomic reconciliation commit."""

    licenses: LicenseRepository
    payments: PaymentRepository
    invoices: InvoiceRepository
    catalog: CatalogRepository

    @abstractmethod
    async def commit_reconciliation(self, license: License, payment: Payment) -> None:
        """Persist a license and a payment as one unit, or neither.

        The license version check applies; a stale version raises
        ``ReconciliationConflictError`` and nothing is written.
        """
        ...


# ── Collaborators ────────────────────────────────────────────────

class CompanyDirectory(ABC):
    @abstractmethod
    async def get_company(self, company_id: str) -> Company | None: ...


class UsageSource(ABC):
    """Ground truth for counted resources, read from the tenant's own data."""

    @abstractmethod
    async def count_active_terminals(self, company_id: str) -> int: ...

    @abstractmethod
    async def count_products(self, company_id: str) -> int: ...

    @abstractmethod
    async def count_clients(self, company_id: str) -> int: ...

    @abstractmethod
    async def count_warehouses(self, company_id: str) -> int: ...

    @abstractmethod
    async def count_total_users(self, company_id: str) -> int: ...

    async def count_active_resources(self, company_id: str, key: UsageKey) -> int | None:
        """Dispatch by counter; ``None`` for counters with no ground truth."""
        counters = {
            UsageKey.ACTIVE_TERMINALS: self.count_active_terminals,
            UsageKey.PRODUCTS: self.count_products,
            UsageKey.CLIENTS: self.count_clients,
            UsageKey.WAREHOUSES: self.count_warehouses,
            UsageKey.TOTAL_USERS: self.count_total_users,
        }
        counter = counters.get(key)
        if counter is None:
            return None
        return await counter(company_id)


class InvoiceGenerator(ABC):
    @abstractmethod
    async def generate_invoice(self, payment_id: str) -> InvoiceRef: ...


class Notifier(ABC):
    @abstractmethod
    async def send_invoice_email(self, invoice_ref: InvoiceRef) -> None: ...

    @abstractmethod
    async def send_payment_confirmation(self, company_id: str, summary: BillingSummary) -> None: ...


class TenantLocks(ABC):
    """Per-tenant mutual exclusion for read-modify-write cycles."""

    @abstractmethod
    def hold(self, company_id: str) -> AbstractAsyncContextManager[None]: ...


# ── Gateways ─────────────────────────────────────────────────────

class GatewayAdapter(ABC):
    """Contract every payment provider integration implements."""

    gateway: Gateway

    @abstractmethod
    async def initiate_purchase(
        self,
        company_id: str,
        amount: Decimal,
        currency: str,
        concept: PaymentConcept,
        metadata: Mapping[str, Any],
        *,
        description: str = "",
        subtotal: Decimal | None = None,
        tax: Decimal | None = None,
    ) -> PurchaseInitiation:
        """Create the local payment, then ask the provider to collect it."""
        ...

    @abstractmethod
    async def verify_event_signature(
        self, raw_payload: bytes, headers: Mapping[str, str]
    ) -> bool: ...

    @abstractmethod
    def parse_event(self, raw_payload: bytes) -> PaymentEvent | SubscriptionEvent | None:
        """Normalise a verified notification; ``None`` for event types we ignore."""
        ...

    @abstractmethod
    async def toggle_auto_renew(self, subscription_id: str, enable: bool) -> None: ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def fetch_outcome(self, payment: Payment) -> PaymentOutcome | None:
        """Ask the provider for a terminal outcome; ``None`` if still open or unknown."""
        ...
