"""Plan and add-on catalog records."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from licensing.core.constants import ALL_MODULES, UNLIMITED
from licensing.core.types import LimitKey, SubscriptionType


@dataclass(frozen=True)
class Plan:
    """A purchasable tier. Immutable per ``version``; admin edits bump it."""

    plan_id: str
    slug: str
    name: str
    monthly_price: Decimal
    annual_price: Decimal
    limits: dict[LimitKey, int | float] = field(default_factory=dict, hash=False)
    modules: frozenset[str] = frozenset()
    version: int = 1
    active: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        if self.monthly_price < 0 or self.annual_price < 0:
            msg = f"plan {self.slug} prices cannot be negative"
            raise ValueError(msg)
        for key, value in self.limits.items():
            if value < UNLIMITED:
                msg = f"plan {self.slug} limit {key.value} must be >= -1: {value}"
                raise ValueError(msg)

    def price_for(self, subscription_type: SubscriptionType) -> Decimal:
        if subscription_type == SubscriptionType.ANNUAL:
            return self.annual_price
        return self.monthly_price

    def limit_for(self, key: LimitKey) -> int | float:
        """Declared limit; a key the plan does not mention is 0."""
        return key.coerce(self.limits.get(key, 0))

    def is_unlimited(self, key: LimitKey) -> bool:
        return self.limits.get(key, 0) == UNLIMITED

    def includes_module(self, module: str) -> bool:
        return ALL_MODULES in self.modules or module in self.modules


@dataclass(frozen=True)
class AddOn:
    """A purchasable increment to quotas and modules."""

    addon_id: str
    slug: str
    name: str
    monthly_price: Decimal
    annual_price: Decimal
    recurring: bool = True
    extra_limits: dict[LimitKey, int | float] = field(default_factory=dict, hash=False)
    modules: frozenset[str] = frozenset()
    version: int = 1
    active: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        if self.monthly_price < 0 or self.annual_price < 0:
            msg = f"add-on {self.slug} prices cannot be negative"
            raise ValueError(msg)
        for key, value in self.extra_limits.items():
            if value < 0:
                msg = f"add-on {self.slug} extra {key.value} must be >= 0: {value}"
                raise ValueError(msg)

    def price_for(self, subscription_type: SubscriptionType) -> Decimal:
        if subscription_type == SubscriptionType.ANNUAL:
            return self.annual_price
        return self.monthly_price

    def extra_for(self, key: LimitKey) -> int | float:
        return key.coerce(self.extra_limits.get(key, 0))
