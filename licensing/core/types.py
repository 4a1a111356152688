"""Shared types for the licensing engine: enums, value objects and records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from licensing.core.constants import DEFAULT_CURRENCY
from licensing.core.exceptions import InvalidStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────

class LicenseState(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionType(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Gateway(str, Enum):
    STRIPE = "stripe"     # card processor
    REDSYS = "redsys"     # regional card-redirect gateway
    PAYPAL = "paypal"     # wallet / subscription gateway


class PaymentConcept(str, Enum):
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    ADDON = "addon"
    OTHER = "other"


class PaymentState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    ACTIVATED = "activated"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class ResetPeriod(str, Enum):
    NONE = "none"
    DAILY = "daily"
    MONTHLY = "monthly"


class AuditAction(str, Enum):
    CREACION = "CREACION"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    INICIO_COMPRA = "INICIO_COMPRA"
    CAMBIO_PLAN = "CAMBIO_PLAN"
    CAMBIO_PLAN_PROGRAMADO = "CAMBIO_PLAN_PROGRAMADO"
    ACTIVACION = "ACTIVACION"
    ACTIVACION_ADDONS = "ACTIVACION_ADDONS"
    CANCELACION_ADDON = "CANCELACION_ADDON"
    PAGO_FALLIDO = "PAGO_FALLIDO"
    PAGO_REEMBOLSADO = "PAGO_REEMBOLSADO"
    CANCELACION = "CANCELACION"
    CANCELACION_PROGRAMADA = "CANCELACION_PROGRAMADA"
    AUTO_RENOVACION = "AUTO_RENOVACION"
    SUSPENSION = "SUSPENSION"
    REACTIVACION = "REACTIVACION"
    RENOVACION = "RENOVACION"


class UsageKey(str, Enum):
    """Live counters stored on the license."""

    CONCURRENT_USERS = "usuariosSimultaneos"
    TOTAL_USERS = "usuariosTotales"
    INVOICES_THIS_MONTH = "facturasEsteMes"
    PRODUCTS = "productosActuales"
    WAREHOUSES = "almacenesActuales"
    CLIENTS = "clientesActuales"
    ACTIVE_TERMINALS = "tpvsActuales"
    STORAGE_USED_GB = "almacenamientoUsadoGB"
    API_CALLS_TODAY = "llamadasAPIHoy"
    EMAILS_THIS_MONTH = "emailsEsteMes"
    SMS_THIS_MONTH = "smsEsteMes"
    WHATSAPP_THIS_MONTH = "whatsappEsteMes"

    @property
    def reset_period(self) -> ResetPeriod:
        return _USAGE_RESET.get(self, ResetPeriod.NONE)

    @property
    def numeric_type(self) -> type:
        return float if self is UsageKey.STORAGE_USED_GB else int


class LimitKey(str, Enum):
    """Quota keys declared by plans and add-ons."""

    CONCURRENT_USERS = "usuariosSimultaneos"
    TOTAL_USERS = "usuariosTotales"
    INVOICES_PER_MONTH = "facturasMes"
    CATALOG_PRODUCTS = "productosCatalogo"
    WAREHOUSES = "almacenes"
    CLIENTS = "clientes"
    STORAGE_GB = "almacenamientoGB"
    ACTIVE_TERMINALS = "tpvsActivos"
    API_CALLS_PER_DAY = "llamadasAPIDia"
    EMAILS_PER_MONTH = "emailsMes"
    SMS_PER_MONTH = "smsMes"
    WHATSAPP_PER_MONTH = "whatsappMes"

    @property
    def usage_key(self) -> UsageKey:
        return USAGE_FOR_LIMIT[self]

    @property
    def numeric_type(self) -> type:
        return float if self is LimitKey.STORAGE_GB else int

    def coerce(self, value: Any) -> int | float:
        """Convert a raw stored value to this key's declared numeric type."""
        return self.numeric_type(value)


_USAGE_RESET: dict[UsageKey, ResetPeriod] = {
    UsageKey.INVOICES_THIS_MONTH: ResetPeriod.MONTHLY,
    UsageKey.EMAILS_THIS_MONTH: ResetPeriod.MONTHLY,
    UsageKey.SMS_THIS_MONTH: ResetPeriod.MONTHLY,
    UsageKey.WHATSAPP_THIS_MONTH: ResetPeriod.MONTHLY,
    UsageKey.API_CALLS_TODAY: ResetPeriod.DAILY,
}

USAGE_FOR_LIMIT: dict[LimitKey, UsageKey] = {
    LimitKey.CONCURRENT_USERS: UsageKey.CONCURRENT_USERS,
    LimitKey.TOTAL_USERS: UsageKey.TOTAL_USERS,
    LimitKey.INVOICES_PER_MONTH: UsageKey.INVOICES_THIS_MONTH,
    LimitKey.CATALOG_PRODUCTS: UsageKey.PRODUCTS,
    LimitKey.WAREHOUSES: UsageKey.WAREHOUSES,
    LimitKey.CLIENTS: UsageKey.CLIENTS,
    LimitKey.STORAGE_GB: UsageKey.STORAGE_USED_GB,
    LimitKey.ACTIVE_TERMINALS: UsageKey.ACTIVE_TERMINALS,
    LimitKey.API_CALLS_PER_DAY: UsageKey.API_CALLS_TODAY,
    LimitKey.EMAILS_PER_MONTH: UsageKey.EMAILS_THIS_MONTH,
    LimitKey.SMS_PER_MONTH: UsageKey.SMS_THIS_MONTH,
    LimitKey.WHATSAPP_PER_MONTH: UsageKey.WHATSAPP_THIS_MONTH,
}

LIMIT_FOR_USAGE: dict[UsageKey, LimitKey] = {v: k for k, v in USAGE_FOR_LIMIT.items()}


# ── Value Objects ────────────────────────────────────────────────

@dataclass(frozen=True)
class Company:
    """Read-only projection of a tenant from the company directory."""

    company_id: str
    name: str
    tax_id: str = ""
    billing_address: str = ""
    email: str = ""


@dataclass(frozen=True)
class GatewaySubscriptionRef:
    gateway: Gateway
    external_id: str


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    action: AuditAction
    detail: str = ""
    payment_id: str | None = None


@dataclass
class AddOnGrant:
    """An add-on activated on a license."""

    addon_id: str
    slug: str
    quantity: int = 1
    monthly_price: Decimal = Decimal("0")
    active: bool = True
    activated_at: datetime = field(default_factory=utcnow)
    cancel_at_renewal: bool = False
    cancelled_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            msg = f"add-on quantity must be >= 1: {self.quantity}"
            raise ValueError(msg)


@dataclass(frozen=True)
class InvoiceRef:
    invoice_id: str
    number: str


# ── Payments ─────────────────────────────────────────────────────

PAYMENT_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.PENDING: frozenset(
        {PaymentState.PROCESSING, PaymentState.COMPLETED, PaymentState.FAILED}
    ),
    PaymentState.PROCESSING: frozenset({PaymentState.COMPLETED, PaymentState.FAILED}),
    # A late success after a timeout-driven failure still has to be honoured.
    PaymentState.FAILED: frozenset({PaymentState.COMPLETED}),
    PaymentState.COMPLETED: frozenset({PaymentState.REFUNDED}),
    PaymentState.REFUNDED: frozenset(),
}

OUTCOME_TO_STATE: dict[PaymentOutcome, PaymentState] = {
    PaymentOutcome.CONFIRMED: PaymentState.COMPLETED,
    PaymentOutcome.FAILED: PaymentState.FAILED,
    PaymentOutcome.REFUNDED: PaymentState.REFUNDED,
}


@dataclass
class Payment:
    """A payment request sent to one gateway.

    ``amount`` is the total charged (tax included); ``subtotal`` and ``tax``
    keep the breakdown used for invoicing.
    """

    payment_id: str
    company_id: str
    gateway: Gateway
    concept: PaymentConcept
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    external_transaction_id: str = ""
    state: PaymentState = PaymentState.PENDING
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    failure_detail: str = ""
    invoice_ref: InvoiceRef | None = None

    def __post_init__(self) -> None:
        if self.amount < 0:
            msg = f"payment amount cannot be negative: {self.amount}"
            raise ValueError(msg)

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            PaymentState.COMPLETED,
            PaymentState.FAILED,
            PaymentState.REFUNDED,
        )

    def can_transition(self, new_state: PaymentState) -> bool:
        return new_state in PAYMENT_TRANSITIONS[self.state]

    def transition(self, new_state: PaymentState, now: datetime, detail: str = "") -> None:
        if not self.can_transition(new_state):
            raise InvalidStateError(
                f"payment cannot move from {self.state.value} to {new_state.value}",
                context={"payment_id": self.payment_id},
            )
        self.state = new_state
        self.updated_at = now
        if new_state == PaymentState.COMPLETED:
            self.paid_at = now
            self.failure_detail = ""
        elif new_state == PaymentState.REFUNDED:
            self.refunded_at = now
        if detail:
            self.failure_detail = detail

    def attach_invoice(self, ref: InvoiceRef) -> None:
        """Link the single invoice allowed for a completed payment."""
        if self.invoice_ref is not None and self.invoice_ref != ref:
            raise InvalidStateError(
                "payment already has an invoice",
                context={"payment_id": self.payment_id, "invoice": self.invoice_ref.number},
            )
        self.invoice_ref = ref


@dataclass(frozen=True)
class PaymentEvent:
    """Normalised payment lifecycle notification from a gateway.

    ``payment_reference`` is our own payment id when the gateway echoes it
    back (metadata / custom id); it lets the coordinator resolve payments
    whose external id was never recorded because initiation timed out.
    """

    gateway: Gateway
    external_transaction_id: str
    outcome: PaymentOutcome
    raw_payload: dict[str, Any] = field(default_factory=dict)
    payment_reference: str | None = None
    detail: str = ""


@dataclass(frozen=True)
class SubscriptionEvent:
    gateway: Gateway
    external_subscription_id: str
    status: SubscriptionStatus
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PurchaseInitiation:
    """Result of starting a purchase with a gateway."""

    payment: Payment
    status: str                       # "requires_action" | "processing"
    client_token: str = ""
    redirect_url: str = ""
    form_fields: dict[str, str] = field(default_factory=dict)
