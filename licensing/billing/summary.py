"""Billing summary: derived, read-only view of what a license costs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from licensing.billing.proration import round2
from licensing.catalog.models import Plan
from licensing.catalog.registry import CatalogService
from licensing.core.constants import DEFAULT_CURRENCY
from licensing.core.exceptions import NotFoundError
from licensing.core.types import SubscriptionType
from licensing.licenses.license import License


@dataclass(frozen=True)
class AddOnLine:
    slug: str
    quantity: int
    monthly_price: Decimal

    @property
    def total(self) -> Decimal:
        return round2(self.monthly_price * self.quantity)


@dataclass(frozen=True)
class BillingSummary:
    company_id: str
    plan_slug: str
    plan_name: str
    subscription_type: SubscriptionType
    base_price: Decimal
    addons_total: Decimal
    monthly_equivalent: Decimal
    next_renewal: datetime | None
    currency: str = DEFAULT_CURRENCY
    addon_lines: tuple[AddOnLine, ...] = field(default=())

    def as_dict(self) -> dict[str, object]:
        return {
            "company_id": self.company_id,
            "plan": self.plan_slug,
            "subscription_type": self.subscription_type.value,
            "base_price": str(self.base_price),
            "addons_total": str(self.addons_total),
            "monthly_equivalent": str(self.monthly_equivalent),
            "next_renewal": self.next_renewal.isoformat() if self.next_renewal else None,
            "currency": self.currency,
        }


async def resolve_plan(license: License, catalog: CatalogService) -> Plan:
    """Cached plan snapshot, falling back to a direct catalog lookup."""
    plan = license.plan_snapshot
    if plan is None:
        plan = await catalog.get_plan(license.plan_id)
        if plan is None:
            raise NotFoundError(
                "plan not found",
                context={"company_id": license.company_id, "plan_id": license.plan_id},
            )
        license.attach_plan(plan)
    return plan


async def build_billing_summary(
    license: License,
    catalog: CatalogService,
    currency: str = DEFAULT_CURRENCY,
) -> BillingSummary:
    plan = await resolve_plan(license, catalog)
    base = plan.price_for(license.subscription_type)
    lines = tuple(
        AddOnLine(slug=g.slug, quantity=g.quantity, monthly_price=g.monthly_price)
        for g in license.active_grants()
    )
    addons_total = round2(sum((line.total for line in lines), Decimal("0")))

    if license.subscription_type == SubscriptionType.ANNUAL:
        monthly_equivalent = round2(base / 12 + addons_total)
    else:
        monthly_equivalent = round2(base + addons_total)

    return BillingSummary(
        company_id=license.company_id,
        plan_slug=plan.slug,
        plan_name=plan.name,
        subscription_type=license.subscription_type,
        base_price=base,
        addons_total=addons_total,
        monthly_equivalent=monthly_equivalent,
        next_renewal=license.renewal_date,
        currency=currency,
        addon_lines=lines,
    )
