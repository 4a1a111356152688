"""Async PostgreSQL-backed repositories (SQLAlchemy Core, ``text()`` queries)."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from licensing.billing.invoicing import Invoice, InvoiceLine, InvoiceState
from licensing.catalog.models import AddOn, Plan
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
from licensing.core.types import (
    AddOnGrant,
    AuditAction,
    AuditEntry,
    Company,
    Gateway,
    GatewaySubscriptionRef,
    InvoiceRef,
    LicenseState,
    LimitKey,
    Payment,
    PaymentConcept,
    PaymentState,
    SubscriptionType,
    UsageKey,
    utcnow,
)
from licensing.licenses.license import License

log = get_logger(__name__)


def _json(value: Any) -> Any:
    """Rows may hand back JSONB as text depending on the driver."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _limits_to_json(limits: Mapping[LimitKey, int | float]) -> str:
    return json.dumps({k.value: v for k, v in limits.items()})


def _limits_from_json(raw: Any) -> dict[LimitKey, int | float]:
    limits: dict[LimitKey, int | float] = {}
    for key, value in (_json(raw) or {}).items():
        try:
            limit_key = LimitKey(key)
        except ValueError:
            log.warning("unknown_limit_key_skipped", key=key)
            continue
        limits[limit_key] = limit_key.coerce(value)
    return limits


# ── Licenses ─────────────────────────────────────────────────────

_LICENSE_COLUMNS = """
    plan_id = :plan_id, state = :state, is_trial = :is_trial,
    trial_start = :trial_start, trial_end = :trial_end,
    subscription_type = :subscription_type, start_date = :start_date,
    renewal_date = :renewal_date, cancellation_date = :cancellation_date,
    auto_renew = :auto_renew, pending_plan_id = :pending_plan_id,
    pending_plan_payment_id = :pending_plan_payment_id,
    pending_subscription_type = :pending_subscription_type,
    pending_addon_slugs = CAST(:pending_addon_slugs AS JSONB),
    pending_addons_payment_id = :pending_addons_payment_id,
    scheduled_plan_id = :scheduled_plan_id, addons = CAST(:addons AS JSONB),
    subscription_gateway = :subscription_gateway,
    subscription_external_id = :subscription_external_id,
    history = CAST(:history AS JSONB), updated_at = :updated_at
"""


class SqlLicenseRepository(LicenseRepository):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_params(lic: License) -> dict[str, Any]:
        ref = lic.gateway_subscription_ref
        return {
            "company_id": lic.company_id,
            "plan_id": lic.plan_id,
            "state": lic.state.value,
            "is_trial": lic.is_trial,
            "trial_start": lic.trial_start,
            "trial_end": lic.trial_end,
            "subscription_type": lic.subscription_type.value,
            "start_date": lic.start_date,
            "renewal_date": lic.renewal_date,
            "cancellation_date": lic.cancellation_date,
            "auto_renew": lic.auto_renew,
            "pending_plan_id": lic.pending_plan_id,
            "pending_plan_payment_id": lic.pending_plan_payment_id,
            "pending_subscription_type": (
                lic.pending_subscription_type.value if lic.pending_subscription_type else None
            ),
            "pending_addon_slugs": json.dumps(sorted(lic.pending_addon_slugs)),
            "pending_addons_payment_id": lic.pending_addons_payment_id,
            "scheduled_plan_id": lic.scheduled_plan_id,
            "addons": json.dumps([
                {
                    "addon_id": g.addon_id,
                    "slug": g.slug,
                    "quantity": g.quantity,
                    "monthly_price": str(g.monthly_price),
                    "active": g.active,
                    "activated_at": g.activated_at.isoformat(),
                    "cancel_at_renewal": g.cancel_at_renewal,
                    "cancelled_at": g.cancelled_at.isoformat() if g.cancelled_at else None,
                }
                for g in lic.addons
            ]),
            "subscription_gateway": ref.gateway.value if ref else None,
            "subscription_external_id": ref.external_id if ref else None,
            "history": json.dumps([
                {
                    "timestamp": e.timestamp.isoformat(),
                    "action": e.action.value,
                    "detail": e.detail,
                    "payment_id": e.payment_id,
                }
                for e in lic.history
            ]),
            "version": lic.version,
            "updated_at": utcnow(),
        }

    @staticmethod
    def _row_to_license(r: Mapping[str, Any]) -> License:
        pending_type = r.get("pending_subscription_type")
        gateway = r.get("subscription_gateway")
        return License(
            company_id=r["company_id"],
            plan_id=r["plan_id"],
            state=LicenseState(r["state"]),
            is_trial=r["is_trial"],
            trial_start=r.get("trial_start"),
            trial_end=r.get("trial_end"),
            subscription_type=SubscriptionType(r["subscription_type"]),
            start_date=r.get("start_date"),
            renewal_date=r.get("renewal_date"),
            cancellation_date=r.get("cancellation_date"),
            auto_renew=r["auto_renew"],
            pending_plan_id=r.get("pending_plan_id"),
            pending_plan_payment_id=r.get("pending_plan_payment_id"),
            pending_subscription_type=SubscriptionType(pending_type) if pending_type else None,
            pending_addon_slugs=set(_json(r.get("pending_addon_slugs")) or []),
            pending_addons_payment_id=r.get("pending_addons_payment_id"),
            scheduled_plan_id=r.get("scheduled_plan_id"),
            addons=[
                AddOnGrant(
                    addon_id=g["addon_id"],
                    slug=g["slug"],
                    quantity=int(g.get("quantity", 1)),
                    monthly_price=Decimal(g.get("monthly_price", "0")),
                    active=bool(g.get("active", True)),
                    activated_at=_dt(g.get("activated_at")) or utcnow(),
                    cancel_at_renewal=bool(g.get("cancel_at_renewal", False)),
                    cancelled_at=_dt(g.get("cancelled_at")),
                )
                for g in _json(r.get("addons")) or []
            ],
            gateway_subscription_ref=(
                GatewaySubscriptionRef(Gateway(gateway), r["subscription_external_id"])
                if gateway else None
            ),
            history=[
                AuditEntry(
                    timestamp=_dt(e["timestamp"]) or utcnow(),
                    action=AuditAction(e["action"]),
                    detail=e.get("detail", ""),
                    payment_id=e.get("payment_id"),
                )
                for e in _json(r.get("history")) or []
            ],
            version=r["version"],
        )

    async def _load_usage(self, conn: AsyncConnection, company_id: str) -> dict[UsageKey, int | float]:
        rows = await conn.execute(
            text("SELECT usage_key, value FROM license_usage WHERE company_id = :cid"),
            {"cid": company_id},
        )
        usage: dict[UsageKey, int | float] = {}
        for r in rows.mappings():
            try:
                key = UsageKey(r["usage_key"])
            except ValueError:
                continue
            usage[key] = key.numeric_type(r["value"])
        return usage

    async def get(self, company_id: str) -> License | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM licenses WHERE company_id = :cid"),
                {"cid": company_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            lic = self._row_to_license(r)
            lic.usage = await self._load_usage(conn, company_id)
            return lic

    async def create(self, license: License) -> License:
        params = self._to_params(license)
        params["version"] = 1
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO licenses
                            (company_id, plan_id, state, is_trial, trial_start, trial_end,
                             subscription_type, start_date, renewal_date, cancellation_date,
                             auto_renew, pending_plan_id, pending_plan_payment_id,
                             pending_subscription_type, pending_addon_slugs,
                             pending_addons_payment_id, scheduled_plan_id, addons,
                             subscription_gateway, subscription_external_id, history,
                             version, updated_at)
                        VALUES
                            (:company_id, :plan_id, :state, :is_trial, :trial_start, :trial_end,
                             :subscription_type, :start_date, :renewal_date, :cancellation_date,
                             :auto_renew, :pending_plan_id, :pending_plan_payment_id,
                             :pending_subscription_type, CAST(:pending_addon_slugs AS JSONB),
                             :pending_addons_payment_id, :scheduled_plan_id,
                             CAST(:addons AS JSONB), :subscription_gateway,
                             :subscription_external_id, CAST(:history AS JSONB),
                             :version, :updated_at)
                        """
                    ),
                    params,
                )
                for key, value in license.usage.items():
                    await conn.execute(
                        text(
                            "INSERT INTO license_usage (company_id, usage_key, value) "
                            "VALUES (:cid, :key, :value)"
                        ),
                        {"cid": license.company_id, "key": key.value, "value": value},
                    )
        except IntegrityError as exc:
            raise StorageError(
                "license already exists", context={"company_id": license.company_id}
            ) from exc
        license.version = 1
        log.info("license_created", company_id=license.company_id, plan_id=license.plan_id)
        return license

    async def update_in(self, conn: AsyncConnection, license: License) -> None:
        """Versioned update inside an open transaction."""
        result = await conn.execute(
            text(
                f"UPDATE licenses SET {_LICENSE_COLUMNS}, version = version + 1 "
                "WHERE company_id = :company_id AND version = :version"
            ),
            self._to_params(license),
        )
        if result.rowcount == 0:
            raise ReconciliationConflictError(
                "license was modified concurrently",
                context={"company_id": license.company_id, "expected": license.version},
            )

    async def save(self, license: License) -> License:
        async with self._engine.begin() as conn:
            await self.update_in(conn, license)
        license.version += 1
        return license

    async def list_company_ids(self) -> list[str]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(text("SELECT company_id FROM licenses ORDER BY company_id"))
            return [r["company_id"] for r in rows.mappings()]

    async def find_by_subscription(self, gateway: Gateway, external_id: str) -> License | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT company_id FROM licenses "
                    "WHERE subscription_gateway = :gw AND subscription_external_id = :ext"
                ),
                {"gw": gateway.value, "ext": external_id},
            )
            r = row.mappings().first()
        if r is None:
            return None
        return await self.get(r["company_id"])

    async def increment_usage(
        self, company_id: str, key: UsageKey, amount: int | float = 1
    ) -> int | float:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    """
                    INSERT INTO license_usage (company_id, usage_key, value)
                    VALUES (:cid, :key, GREATEST(:amount, 0))
                    ON CONFLICT (company_id, usage_key) DO UPDATE
                        SET value = GREATEST(license_usage.value + :amount, 0)
                    RETURNING value
                    """
                ),
                {"cid": company_id, "key": key.value, "amount": amount},
            )
            value = row.scalar_one()
        return key.numeric_type(value)

    async def set_usage(self, company_id: str, key: UsageKey, value: int | float) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO license_usage (company_id, usage_key, value)
                    VALUES (:cid, :key, :value)
                    ON CONFLICT (company_id, usage_key) DO UPDATE SET value = EXCLUDED.value
                    """
                ),
                {"cid": company_id, "key": key.value, "value": max(0, value)},
            )

    async def reset_usage(self, keys: Sequence[UsageKey]) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "UPDATE license_usage SET value = 0 "
                    "WHERE usage_key = ANY(:keys) AND value <> 0"
                ),
                {"keys": [k.value for k in keys]},
            )
        return result.rowcount


# ── Payments ─────────────────────────────────────────────────────

class SqlPaymentRepository(PaymentRepository):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_params(p: Payment) -> dict[str, Any]:
        return {
            "payment_id": p.payment_id,
            "company_id": p.company_id,
            "gateway": p.gateway.value,
            "external_transaction_id": p.external_transaction_id,
            "concept": p.concept.value,
            "subtotal": p.subtotal,
            "tax": p.tax,
            "amount": p.amount,
            "currency": p.currency,
            "state": p.state.value,
            "description": p.description,
            "metadata": json.dumps(p.metadata, default=str),
            "created_at": p.created_at,
            "updated_at": p.updated_at,
            "paid_at": p.paid_at,
            "refunded_at": p.refunded_at,
            "failure_detail": p.failure_detail,
            "invoice_id": p.invoice_ref.invoice_id if p.invoice_ref else None,
            "invoice_number": p.invoice_ref.number if p.invoice_ref else None,
        }

    @staticmethod
    def _row_to_payment(r: Mapping[str, Any]) -> Payment:
        invoice_id = r.get("invoice_id")
        return Payment(
            payment_id=r["payment_id"],
            company_id=r["company_id"],
            gateway=Gateway(r["gateway"]),
            concept=PaymentConcept(r["concept"]),
            amount=Decimal(r["amount"]),
            currency=r["currency"],
            subtotal=Decimal(r["subtotal"]),
            tax=Decimal(r["tax"]),
            external_transaction_id=r.get("external_transaction_id") or "",
            state=PaymentState(r["state"]),
            description=r.get("description") or "",
            metadata=_json(r.get("metadata")) or {},
            created_at=r["created_at"],
            updated_at=r["updated_at"],
            paid_at=r.get("paid_at"),
            refunded_at=r.get("refunded_at"),
            failure_detail=r.get("failure_detail") or "",
            invoice_ref=InvoiceRef(invoice_id, r["invoice_number"]) if invoice_id else None,
        )

    async def create(self, payment: Payment) -> Payment:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO payments
                            (payment_id, company_id, gateway, external_transaction_id,
                             concept, subtotal, tax, amount, currency, state, description,
                             metadata, created_at, updated_at, paid_at, refunded_at,
                             failure_detail, invoice_id, invoice_number)
                        VALUES
                            (:payment_id, :company_id, :gateway, :external_transaction_id,
                             :concept, :subtotal, :tax, :amount, :currency, :state,
                             :description, CAST(:metadata AS JSONB), :created_at,
                             :updated_at, :paid_at, :refunded_at, :failure_detail,
                             :invoice_id, :invoice_number)
                        """
                    ),
                    self._to_params(payment),
                )
        except IntegrityError as exc:
            raise DuplicatePaymentError(
                "payment already recorded",
                context={
                    "payment_id": payment.payment_id,
                    "external_transaction_id": payment.external_transaction_id,
                },
            ) from exc
        return payment

    async def get(self, payment_id: str) -> Payment | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM payments WHERE payment_id = :pid"),
                {"pid": payment_id},
            )
            r = row.mappings().first()
            return self._row_to_payment(r) if r else None

    async def find_by_external(self, gateway: Gateway, external_id: str) -> Payment | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT * FROM payments "
                    "WHERE gateway = :gw AND external_transaction_id = :ext"
                ),
                {"gw": gateway.value, "ext": external_id},
            )
            r = row.mappings().first()
            return self._row_to_payment(r) if r else None

    async def update_in(self, conn: AsyncConnection, payment: Payment) -> None:
        result = await conn.execute(
            text(
                """
                UPDATE payments SET
                    external_transaction_id = :external_transaction_id,
                    state = :state, metadata = CAST(:metadata AS JSONB),
                    updated_at = :updated_at, paid_at = :paid_at,
                    refunded_at = :refunded_at, failure_detail = :failure_detail,
                    invoice_id = :invoice_id, invoice_number = :invoice_number
                WHERE payment_id = :payment_id
                """
            ),
            self._to_params(payment),
        )
        if result.rowcount == 0:
            raise StorageError("payment not found", context={"payment_id": payment.payment_id})

    async def save(self, payment: Payment) -> Payment:
        try:
            async with self._engine.begin() as conn:
                await self.update_in(conn, payment)
        except IntegrityError as exc:
            raise DuplicatePaymentError(
                "external transaction already recorded",
                context={"payment_id": payment.payment_id},
            ) from exc
        return payment

    async def list_unresolved(self, created_before: datetime) -> list[Payment]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    "SELECT * FROM payments "
                    "WHERE state IN ('pending', 'processing') AND created_at < :before "
                    "ORDER BY created_at"
                ),
                {"before": created_before},
            )
            return [self._row_to_payment(r) for r in rows.mappings()]

    async def list_for_company(self, company_id: str, limit: int = 50) -> list[Payment]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    "SELECT * FROM payments WHERE company_id = :cid "
                    "ORDER BY created_at DESC LIMIT :limit"
                ),
                {"cid": company_id, "limit": limit},
            )
            return [self._row_to_payment(r) for r in rows.mappings()]


# ── Invoices ─────────────────────────────────────────────────────

class SqlInvoiceRepository(InvoiceRepository):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_params(inv: Invoice) -> dict[str, Any]:
        return {
            "invoice_id": inv.invoice_id,
            "number": inv.number,
            "series": inv.series,
            "payment_id": inv.payment_id,
            "company_id": inv.company_id,
            "customer": json.dumps({
                "company_id": inv.customer.company_id,
                "name": inv.customer.name,
                "tax_id": inv.customer.tax_id,
                "billing_address": inv.customer.billing_address,
                "email": inv.customer.email,
            }),
            "lines": json.dumps([
                {
                    "description": line.description,
                    "quantity": line.quantity,
                    "unit_price": str(line.unit_price),
                    "tax_rate": str(line.tax_rate),
                    "subtotal": str(line.subtotal),
                    "tax": str(line.tax),
                    "total": str(line.total),
                }
                for line in inv.lines
            ]),
            "subtotal": inv.subtotal,
            "tax": inv.tax,
            "total": inv.total,
            "currency": inv.currency,
            "issued_at": inv.issued_at,
            "period_start": inv.period_start,
            "period_end": inv.period_end,
            "state": inv.state.value,
            "credit_note_of": inv.credit_note_of,
        }

    @staticmethod
    def _row_to_invoice(r: Mapping[str, Any]) -> Invoice:
        customer = _json(r["customer"]) or {}
        return Invoice(
            invoice_id=r["invoice_id"],
            number=r["number"],
            series=r["series"],
            payment_id=r["payment_id"],
            company_id=r["company_id"],
            customer=Company(**customer),
            lines=[
                InvoiceLine(
                    description=line["description"],
                    quantity=int(line["quantity"]),
                    unit_price=Decimal(line["unit_price"]),
                    tax_rate=Decimal(line["tax_rate"]),
                    subtotal=Decimal(line["subtotal"]),
                    tax=Decimal(line["tax"]),
                    total=Decimal(line["total"]),
                )
                for line in _json(r["lines"]) or []
            ],
            subtotal=Decimal(r["subtotal"]),
            tax=Decimal(r["tax"]),
            total=Decimal(r["total"]),
            currency=r["currency"],
            issued_at=r["issued_at"],
            period_start=r.get("period_start"),
            period_end=r.get("period_end"),
            state=InvoiceState(r["state"]),
            credit_note_of=r.get("credit_note_of"),
        )

    async def next_number(self, series: str) -> int:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    """
                    INSERT INTO invoice_counters (series, last_value) VALUES (:series, 1)
                    ON CONFLICT (series) DO UPDATE
                        SET last_value = invoice_counters.last_value + 1
                    RETURNING last_value
                    """
                ),
                {"series": series},
            )
            return int(row.scalar_one())

    async def create(self, invoice: Invoice) -> Invoice:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO invoices
                            (invoice_id, number, series, payment_id, company_id, customer,
                             lines, subtotal, tax, total, currency, issued_at,
                             period_start, period_end, state, credit_note_of)
                        VALUES
                            (:invoice_id, :number, :series, :payment_id, :company_id,
                             CAST(:customer AS JSONB), CAST(:lines AS JSONB), :subtotal,
                             :tax, :total, :currency, :issued_at, :period_start,
                             :period_end, :state, :credit_note_of)
                        """
                    ),
                    self._to_params(invoice),
                )
        except IntegrityError as exc:
            raise StorageError(
                "invoice already exists",
                context={"payment_id": invoice.payment_id, "number": invoice.number},
            ) from exc
        return invoice

    async def get(self, invoice_id: str) -> Invoice | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM invoices WHERE invoice_id = :iid"),
                {"iid": invoice_id},
            )
            r = row.mappings().first()
            return self._row_to_invoice(r) if r else None

    async def find_by_payment(self, payment_id: str) -> Invoice | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT * FROM invoices "
                    "WHERE payment_id = :pid AND credit_note_of IS NULL"
                ),
                {"pid": payment_id},
            )
            r = row.mappings().first()
            return self._row_to_invoice(r) if r else None

    async def save(self, invoice: Invoice) -> Invoice:
        async with self._engine.begin() as conn:
            await conn.execute(
                text("UPDATE invoices SET state = :state WHERE invoice_id = :invoice_id"),
                {"state": invoice.state.value, "invoice_id": invoice.invoice_id},
            )
        return invoice


# ── Catalog ──────────────────────────────────────────────────────

class SqlCatalogRepository(CatalogRepository):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _row_to_plan(r: Mapping[str, Any]) -> Plan:
        return Plan(
            plan_id=r["plan_id"],
            slug=r["slug"],
            name=r["name"],
            monthly_price=Decimal(r["monthly_price"]),
            annual_price=Decimal(r["annual_price"]),
            limits=_limits_from_json(r["limits"]),
            modules=frozenset(_json(r["modules"]) or []),
            version=r["version"],
            active=r["active"],
            description=r.get("description") or "",
        )

    @staticmethod
    def _row_to_addon(r: Mapping[str, Any]) -> AddOn:
        return AddOn(
            addon_id=r["addon_id"],
            slug=r["slug"],
            name=r["name"],
            monthly_price=Decimal(r["monthly_price"]),
            annual_price=Decimal(r["annual_price"]),
            recurring=r["recurring"],
            extra_limits=_limits_from_json(r["extra_limits"]),
            modules=frozenset(_json(r["modules"]) or []),
            version=r["version"],
            active=r["active"],
            description=r.get("description") or "",
        )

    async def list_plans(self) -> list[Plan]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(text("SELECT * FROM plans ORDER BY monthly_price"))
            return [self._row_to_plan(r) for r in rows.mappings()]

    async def list_addons(self) -> list[AddOn]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(text("SELECT * FROM addons ORDER BY slug"))
            return [self._row_to_addon(r) for r in rows.mappings()]

    async def upsert_plan(self, plan: Plan) -> Plan:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO plans
                        (plan_id, slug, name, description, monthly_price, annual_price,
                         limits, modules, version, active)
                    VALUES
                        (:plan_id, :slug, :name, :description, :monthly, :annual,
                         CAST(:limits AS JSONB), CAST(:modules AS JSONB), :version, :active)
                    ON CONFLICT (slug) DO UPDATE SET
                        name = EXCLUDED.name, description = EXCLUDED.description,
                        monthly_price = EXCLUDED.monthly_price,
                        annual_price = EXCLUDED.annual_price, limits = EXCLUDED.limits,
                        modules = EXCLUDED.modules, version = EXCLUDED.version,
                        active = EXCLUDED.active
                    """
                ),
                {
                    "plan_id": plan.plan_id,
                    "slug": plan.slug,
                    "name": plan.name,
                    "description": plan.description,
                    "monthly": plan.monthly_price,
                    "annual": plan.annual_price,
                    "limits": _limits_to_json(plan.limits),
                    "modules": json.dumps(sorted(plan.modules)),
                    "version": plan.version,
                    "active": plan.active,
                },
            )
        return plan

    async def upsert_addon(self, addon: AddOn) -> AddOn:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO addons
                        (addon_id, slug, name, description, recurring, monthly_price,
                         annual_price, extra_limits, modules, version, active)
                    VALUES
                        (:addon_id, :slug, :name, :description, :recurring, :monthly,
                         :annual, CAST(:extra AS JSONB), CAST(:modules AS JSONB),
                         :version, :active)
                    ON CONFLICT (slug) DO UPDATE SET
                        name = EXCLUDED.name, description = EXCLUDED.description,
                        recurring = EXCLUDED.recurring,
                        monthly_price = EXCLUDED.monthly_price,
                        annual_price = EXCLUDED.annual_price,
                        extra_limits = EXCLUDED.extra_limits, modules = EXCLUDED.modules,
                        version = EXCLUDED.version, active = EXCLUDED.active
                    """
                ),
                {
                    "addon_id": addon.addon_id,
                    "slug": addon.slug,
                    "name": addon.name,
                    "description": addon.description,
                    "recurring": addon.recurring,
                    "monthly": addon.monthly_price,
                    "annual": addon.annual_price,
                    "extra": _limits_to_json(addon.extra_limits),
                    "modules": json.dumps(sorted(addon.modules)),
                    "version": addon.version,
                    "active": addon.active,
                },
            )
        return addon


class SqlStore(LicensingStore):
    """All repositories over one engine, plus the transactional commit."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self.licenses = SqlLicenseRepository(engine)
        self.payments = SqlPaymentRepository(engine)
        self.invoices = SqlInvoiceRepository(engine)
        self.catalog = SqlCatalogRepository(engine)

    async def commit_reconciliation(self, license: License, payment: Payment) -> None:
        try:
            async with self._engine.begin() as conn:
                await self.licenses.update_in(conn, license)
                await self.payments.update_in(conn, payment)
        except IntegrityError as exc:
            raise DuplicatePaymentError(
                "external transaction already recorded",
                context={"payment_id": payment.payment_id},
            ) from exc
        except SQLAlchemyError as exc:
            log.error(
                "reconciliation_commit_failed",
                company_id=license.company_id,
                payment_id=payment.payment_id,
                error=str(exc),
            )
            raise StorageError(
                "reconciliation commit failed",
                context={"company_id": license.company_id, "payment_id": payment.payment_id},
            ) from exc
        license.version += 1
