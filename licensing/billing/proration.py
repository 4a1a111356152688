"""Proration calculator: pure functions, no I/O.

Billing cycles are a fixed 30 or 365 days, not calendar months or years.
All money is ``Decimal`` and every rounding step uses ``round2`` (half-up to
the cent) so totals shown to the tenant and sent to the gateway agree.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from licensing.catalog.models import AddOn, Plan
from licensing.core.constants import (
    ANNUAL_CYCLE_DAYS,
    CENT,
    DEFAULT_IVA_RATE,
    FULL_CHARGE_THRESHOLD,
    MONTHLY_CYCLE_DAYS,
)
from licensing.core.types import SubscriptionType

_SECONDS_PER_DAY = 86_400


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: Decimal | int | float | str) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def cycle_days(subscription_type: SubscriptionType) -> int:
    if subscription_type == SubscriptionType.ANNUAL:
        return ANNUAL_CYCLE_DAYS
    return MONTHLY_CYCLE_DAYS


def _midnight(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def days_remaining(renewal_date: datetime | None, now: datetime) -> int:
    """Whole days left in the cycle, both dates taken at midnight."""
    if renewal_date is None:
        return 0
    delta = _midnight(renewal_date) - _midnight(now)
    return max(0, math.ceil(delta.total_seconds() / _SECONDS_PER_DAY))


def prorate(full_price: Decimal | int | float | str, remaining: int, cycle: int) -> Decimal:
    """Charge for ``remaining`` days of a ``cycle``-day period.

    Purchases at the very start of a cycle (90% or more of it left) pay the
    full price; nothing is charged once the cycle is over.
    """
    price = to_decimal(full_price)
    if remaining >= cycle:
        return price
    if remaining <= 0:
        return Decimal("0.00")
    if Decimal(remaining) >= FULL_CHARGE_THRESHOLD * Decimal(cycle):
        return price
    return round2(price / Decimal(cycle) * Decimal(remaining))


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    iva: Decimal
    total: Decimal


def apply_iva(
    subtotal: Decimal | int | float | str,
    rate: Decimal | str = DEFAULT_IVA_RATE,
) -> TaxBreakdown:
    base = round2(subtotal)
    iva = round2(base * to_decimal(rate))
    return TaxBreakdown(subtotal=base, iva=iva, total=round2(base + iva))


# ── Quotes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class QuoteLine:
    description: str
    full_price: Decimal
    amount: Decimal
    slug: str = ""
    quantity: int = 1


@dataclass(frozen=True)
class ProrationQuote:
    """Amount due now for a plan change or add-on purchase."""

    lines: tuple[QuoteLine, ...] = ()
    days_remaining: int = 0
    cycle_days: int = MONTHLY_CYCLE_DAYS
    is_upgrade: bool = True
    extra: dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def subtotal(self) -> Decimal:
        return round2(sum((line.amount for line in self.lines), Decimal("0")))

    def with_tax(self, rate: Decimal | str = DEFAULT_IVA_RATE) -> TaxBreakdown:
        return apply_iva(self.subtotal, rate)


def is_upgrade(current: Plan, new: Plan, subscription_type: SubscriptionType) -> bool:
    """Upgrades are strictly more expensive at the subscription's cycle."""
    return new.price_for(subscription_type) > current.price_for(subscription_type)


def quote_upgrade(
    current: Plan,
    new: Plan,
    subscription_type: SubscriptionType,
    renewal_date: datetime | None,
    now: datetime,
) -> ProrationQuote:
    """Prorated price difference for moving to ``new`` mid-cycle.

    Downgrades produce an empty quote flagged ``is_upgrade=False``: they are
    applied at the next renewal with no charge or refund.
    """
    cycle = cycle_days(subscription_type)
    remaining = days_remaining(renewal_date, now)
    if not is_upgrade(current, new, subscription_type):
        return ProrationQuote(days_remaining=remaining, cycle_days=cycle, is_upgrade=False)

    difference = new.price_for(subscription_type) - current.price_for(subscription_type)
    line = QuoteLine(
        description=f"{current.name} -> {new.name}",
        full_price=difference,
        amount=prorate(difference, remaining, cycle),
        slug=new.slug,
    )
    return ProrationQuote(lines=(line,), days_remaining=remaining, cycle_days=cycle)


def quote_addons(
    addons: Iterable[tuple[AddOn, int]],
    subscription_type: SubscriptionType,
    renewal_date: datetime | None,
    now: datetime,
    *,
    full_cycle: bool = False,
) -> ProrationQuote:
    """Price a set of ``(add-on, quantity)`` pairs.

    Recurring add-ons are prorated to the current renewal date unless
    ``full_cycle`` is set (new subscriptions, trials); one-off add-ons are
    always charged in full.
    """
    cycle = cycle_days(subscription_type)
    remaining = cycle if full_cycle else days_remaining(renewal_date, now)
    lines: list[QuoteLine] = []
    for addon, quantity in addons:
        full = addon.price_for(subscription_type) * quantity
        amount = prorate(full, remaining, cycle) if addon.recurring else round2(full)
        lines.append(
            QuoteLine(
                description=addon.name,
                full_price=full,
                amount=amount,
                slug=addon.slug,
                quantity=quantity,
            )
        )
    return ProrationQuote(lines=tuple(lines), days_remaining=remaining, cycle_days=cycle)
