"""In-memory store for tests and single-process deployments.

Records are deep-copied on the way in and out so callers never share state
with the store, the same as a database round-trip. Each operation completes
without awaiting, which makes it atomic with respect to other coroutines.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from licensing.core.exceptions import (
    DuplicatePaymentError,
    ReconciliationConflictError,
    StorageError,
)
from licensing.core.interfaces import (
    CatalogRepository,
    InvoiceRepository,
    LicenseRepository,
    LicensingStore,
    PaymentRepository,
)
from licensing.core.logging import get_logger
from licensing.core.types import Gateway, Payment, PaymentState, UsageKey

if TYPE_CHECKING:
    from licensing.billing.invoicing import Invoice
    from licensing.catalog.models import AddOn, Plan
    from licensing.licenses.license import License

log = get_logger(__name__)


class InMemoryLicenseRepository(LicenseRepository):
    def __init__(self) -> None:
        self._records: dict[str, License] = {}
        self._usage: dict[str, dict[UsageKey, int | float]] = {}

    def _load(self, company_id: str) -> License | None:
        record = self._records.get(company_id)
        if record is None:
            return None
        lic = copy.deepcopy(record)
        lic.usage = dict(self._usage.get(company_id, {}))
        return lic

    def _store(self, license: License) -> None:
        record = copy.deepcopy(license)
        record.usage = {}
        self._records[license.company_id] = record

    def check_version(self, license: License) -> None:
        stored = self._records.get(license.company_id)
        if stored is None:
            raise StorageError("license not found", context={"company_id": license.company_id})
        if stored.version != license.version:
            raise ReconciliationConflictError(
                "license was modified concurrently",
                context={
                    "company_id": license.company_id,
                    "expected": license.version,
                    "stored": stored.version,
                },
            )

    def write(self, license: License) -> License:
        license.version += 1
        self._store(license)
        return license

    async def get(self, company_id: str) -> License | None:
        return self._load(company_id)

    async def create(self, license: License) -> License:
        if license.company_id in self._records:
            raise StorageError("license already exists", context={"company_id": license.company_id})
        license.version = 1
        self._usage[license.company_id] = dict(license.usage)
        self._store(license)
        return license

    async def save(self, license: License) -> License:
        self.check_version(license)
        return self.write(license)

    async def list_company_ids(self) -> list[str]:
        return sorted(self._records)

    async def find_by_subscription(self, gateway: Gateway, external_id: str) -> License | None:
        for company_id, record in self._records.items():
            ref = record.gateway_subscription_ref
            if ref is not None and ref.gateway == gateway and ref.external_id == external_id:
                return self._load(company_id)
        return None

    async def increment_usage(
        self, company_id: str, key: UsageKey, amount: int | float = 1
    ) -> int | float:
        if company_id not in self._records:
            raise StorageError("license not found", context={"company_id": company_id})
        counters = self._usage.setdefault(company_id, {})
        value = key.numeric_type(max(0, counters.get(key, 0) + amount))
        counters[key] = value
        return value

    async def set_usage(self, company_id: str, key: UsageKey, value: int | float) -> None:
        if company_id not in self._records:
            raise StorageError("license not found", context={"company_id": company_id})
        self._usage.setdefault(company_id, {})[key] = key.numeric_type(max(0, value))

    async def reset_usage(self, keys: Sequence[UsageKey]) -> int:
        for counters in self._usage.values():
            for key in keys:
                counters[key] = key.numeric_type(0)
        return len(self._usage)


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self) -> None:
        self._payments: dict[str, Payment] = {}
        self._by_external: dict[tuple[Gateway, str], str] = {}

    def exists(self, payment_id: str) -> bool:
        return payment_id in self._payments

    def check_external(self, payment: Payment) -> None:
        if not payment.external_transaction_id:
            return
        owner = self._by_external.get((payment.gateway, payment.external_transaction_id))
        if owner is not None and owner != payment.payment_id:
            raise DuplicatePaymentError(
                "external transaction already recorded",
                context={
                    "gateway": payment.gateway.value,
                    "external_transaction_id": payment.external_transaction_id,
                },
            )

    def write(self, payment: Payment) -> Payment:
        self._payments[payment.payment_id] = copy.deepcopy(payment)
        if payment.external_transaction_id:
            key = (payment.gateway, payment.external_transaction_id)
            self._by_external[key] = payment.payment_id
        return payment

    async def create(self, payment: Payment) -> Payment:
        if payment.payment_id in self._payments:
            raise DuplicatePaymentError(
                "payment id already exists", context={"payment_id": payment.payment_id}
            )
        self.check_external(payment)
        return self.write(payment)

    async def get(self, payment_id: str) -> Payment | None:
        payment = self._payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def find_by_external(self, gateway: Gateway, external_id: str) -> Payment | None:
        payment_id = self._by_external.get((gateway, external_id))
        if payment_id is None:
            return None
        return await self.get(payment_id)

    async def save(self, payment: Payment) -> Payment:
        if payment.payment_id not in self._payments:
            raise StorageError("payment not found", context={"payment_id": payment.payment_id})
        self.check_external(payment)
        return self.write(payment)

    async def list_unresolved(self, created_before: datetime) -> list[Payment]:
        open_states = (PaymentState.PENDING, PaymentState.PROCESSING)
        return [
            copy.deepcopy(p)
            for p in sorted(self._payments.values(), key=lambda p: p.created_at)
            if p.state in open_states and p.created_at < created_before
        ]

    async def list_for_company(self, company_id: str, limit: int = 50) -> list[Payment]:
        owned = [p for p in self._payments.values() if p.company_id == company_id]
        owned.sort(key=lambda p: p.created_at, reverse=True)
        return [copy.deepcopy(p) for p in owned[:limit]]


class InMemoryInvoiceRepository(InvoiceRepository):
    def __init__(self) -> None:
        self._invoices: dict[str, Invoice] = {}
        self._counters: dict[str, int] = {}

    async def next_number(self, series: str) -> int:
        value = self._counters.get(series, 0) + 1
        self._counters[series] = value
        return value

    async def create(self, invoice: Invoice) -> Invoice:
        if invoice.invoice_id in self._invoices:
            raise StorageError("invoice already exists", context={"invoice_id": invoice.invoice_id})
        self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)
        return invoice

    async def get(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return copy.deepcopy(invoice) if invoice else None

    async def find_by_payment(self, payment_id: str) -> Invoice | None:
        for invoice in self._invoices.values():
            if invoice.payment_id == payment_id and invoice.credit_note_of is None:
                return copy.deepcopy(invoice)
        return None

    async def save(self, invoice: Invoice) -> Invoice:
        if invoice.invoice_id not in self._invoices:
            raise StorageError("invoice not found", context={"invoice_id": invoice.invoice_id})
        self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)
        return invoice


class InMemoryCatalogRepository(CatalogRepository):
    def __init__(self, plans: Iterable[Plan] = (), addons: Iterable[AddOn] = ()) -> None:
        self._plans: dict[str, Plan] = {p.slug: p for p in plans}
        self._addons: dict[str, AddOn] = {a.slug: a for a in addons}

    async def list_plans(self) -> list[Plan]:
        return list(self._plans.values())

    async def list_addons(self) -> list[AddOn]:
        return list(self._addons.values())

    async def upsert_plan(self, plan: Plan) -> Plan:
        self._plans[plan.slug] = plan
        return plan

    async def upsert_addon(self, addon: AddOn) -> AddOn:
        self._addons[addon.slug] = addon
        return addon


class InMemoryStore(LicensingStore):
    def __init__(self, plans: Iterable[Plan] = (), addons: Iterable[AddOn] = ()) -> None:
        self.licenses = InMemoryLicenseRepository()
        self.payments = InMemoryPaymentRepository()
        self.invoices = InMemoryInvoiceRepository()
        self.catalog = InMemoryCatalogRepository(plans, addons)

    async def commit_reconciliation(self, license: License, payment: Payment) -> None:
        # Validate everything first; the writes below cannot fail.
        self.licenses.check_version(license)
        if not self.payments.exists(payment.payment_id):
            raise StorageError("payment not found", context={"payment_id": payment.payment_id})
        self.payments.check_external(payment)
        self.licenses.write(license)
        self.payments.write(payment)
        log.debug(
            "reconciliation_committed",
            company_id=license.company_id,
            payment_id=payment.payment_id,
            state=payment.state.value,
        )
