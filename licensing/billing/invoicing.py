"""Subscription invoicing: sequential invoices and credit notes for payments."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum

from uuid_extensions import uuid7

from licensing.billing.proration import TaxBreakdown, round2
from licensing.core.constants import (
    CREDIT_NOTE_SERIES,
    DEFAULT_CURRENCY,
    DEFAULT_IVA_RATE,
    INVOICE_NUMBER_WIDTH,
    INVOICE_SERIES,
)
from licensing.core.exceptions import InvalidStateError, NotFoundError
from licensing.core.interfaces import CompanyDirectory, InvoiceGenerator, LicensingStore
from licensing.core.logging import get_logger
from licensing.core.types import (
    Company,
    InvoiceRef,
    Payment,
    PaymentConcept,
    PaymentState,
    utcnow,
)

log = get_logger(__name__)

_CONCEPT_LABELS: dict[PaymentConcept, str] = {
    PaymentConcept.SUBSCRIPTION: "Subscription",
    PaymentConcept.UPGRADE: "Plan upgrade (prorated)",
    PaymentConcept.ADDON: "Add-ons",
    PaymentConcept.OTHER: "Other services",
}


class InvoiceState(str, Enum):
    ISSUED = "issued"
    VOID = "void"


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal

    def negated(self) -> InvoiceLine:
        return replace(
            self,
            unit_price=-self.unit_price,
            subtotal=-self.subtotal,
            tax=-self.tax,
            total=-self.total,
        )


@dataclass
class Invoice:
    invoice_id: str
    number: str
    series: str
    payment_id: str
    company_id: str
    customer: Company
    lines: list[InvoiceLine]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str = DEFAULT_CURRENCY
    issued_at: datetime = field(default_factory=utcnow)
    period_start: datetime | None = None
    period_end: datetime | None = None
    state: InvoiceState = InvoiceState.ISSUED
    credit_note_of: str | None = None

    @property
    def ref(self) -> InvoiceRef:
        return InvoiceRef(invoice_id=self.invoice_id, number=self.number)

    @property
    def is_credit_note(self) -> bool:
        return self.credit_note_of is not None


def format_number(series: str, value: int) -> str:
    return f"{series}-{value:0{INVOICE_NUMBER_WIDTH}d}"


def breakdown_for(payment: Payment, rate: Decimal) -> TaxBreakdown:
    """Tax split recorded at purchase time, or derived from the charged total."""
    if payment.subtotal > 0:
        return TaxBreakdown(
            subtotal=round2(payment.subtotal),
            iva=round2(payment.tax),
            total=round2(payment.amount),
        )
    subtotal = round2(payment.amount / (1 + rate))
    return TaxBreakdown(
        subtotal=subtotal,
        iva=round2(payment.amount - subtotal),
        total=round2(payment.amount),
    )


class InvoiceService(InvoiceGenerator):
    """Issues one invoice per completed payment, numbered per series."""

    def __init__(
        self,
        store: LicensingStore,
        directory: CompanyDirectory,
        *,
        series: str = INVOICE_SERIES,
        credit_series: str = CREDIT_NOTE_SERIES,
        iva_rate: Decimal = DEFAULT_IVA_RATE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._series = series
        self._credit_series = credit_series
        self._iva_rate = iva_rate
        self._clock = clock

    async def generate_invoice(self, payment_id: str) -> InvoiceRef:
        """Invoice a completed payment. Calling it again returns the same invoice."""
        payment = await self._store.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("payment not found", context={"payment_id": payment_id})
        if payment.state != PaymentState.COMPLETED:
            raise InvalidStateError(
                "only completed payments are invoiced",
                context={"payment_id": payment_id, "state": payment.state.value},
            )

        existing = await self._store.invoices.find_by_payment(payment_id)
        if existing is not None:
            log.debug("invoice_exists", payment_id=payment_id, number=existing.number)
            return existing.ref

        company = await self._directory.get_company(payment.company_id)
        if company is None:
            raise NotFoundError("company not found", context={"company_id": payment.company_id})

        license = await self._store.licenses.get(payment.company_id)
        breakdown = breakdown_for(payment, self._iva_rate)
        line = InvoiceLine(
            description=payment.description or _CONCEPT_LABELS[payment.concept],
            quantity=1,
            unit_price=breakdown.subtotal,
            tax_rate=self._iva_rate,
            subtotal=breakdown.subtotal,
            tax=breakdown.iva,
            total=breakdown.total,
        )

        number = format_number(self._series, await self._store.invoices.next_number(self._series))
        invoice = Invoice(
            invoice_id=str(uuid7()),
            number=number,
            series=self._series,
            payment_id=payment.payment_id,
            company_id=payment.company_id,
            customer=company,
            lines=[line],
            subtotal=breakdown.subtotal,
            tax=breakdown.iva,
            total=breakdown.total,
            currency=payment.currency,
            issued_at=self._clock(),
            period_start=license.start_date if license else None,
            period_end=license.renewal_date if license else None,
        )
        await self._store.invoices.create(invoice)

        payment.attach_invoice(invoice.ref)
        await self._store.payments.save(payment)

        log.info(
            "invoice_generated",
            company_id=payment.company_id,
            payment_id=payment.payment_id,
            number=number,
            total=str(breakdown.total),
        )
        return invoice.ref

    async def issue_credit_note(self, invoice_id: str, reason: str = "") -> InvoiceRef:
        """Cancel an invoice with a negated credit note and void the original."""
        original = await self._store.invoices.get(invoice_id)
        if original is None:
            raise NotFoundError("invoice not found", context={"invoice_id": invoice_id})
        if original.is_credit_note or original.state == InvoiceState.VOID:
            raise InvalidStateError(
                "invoice cannot be credited",
                context={"invoice_id": invoice_id, "state": original.state.value},
            )

        value = await self._store.invoices.next_number(self._credit_series)
        note = Invoice(
            invoice_id=str(uuid7()),
            number=format_number(self._credit_series, value),
            series=self._credit_series,
            payment_id=original.payment_id,
            company_id=original.company_id,
            customer=original.customer,
            lines=[line.negated() for line in original.lines],
            subtotal=-original.subtotal,
            tax=-original.tax,
            total=-original.total,
            currency=original.currency,
            issued_at=self._clock(),
            period_start=original.period_start,
            period_end=original.period_end,
            credit_note_of=original.invoice_id,
        )
        await self._store.invoices.create(note)

        original.state = InvoiceState.VOID
        await self._store.invoices.save(original)

        log.info(
            "credit_note_issued",
            invoice=original.number,
            credit_note=note.number,
            reason=reason,
        )
        return note.ref

