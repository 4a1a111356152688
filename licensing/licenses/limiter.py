"""Usage limiter: evaluates quotas against live counters.

Stateless: every check recomputes the effective limit from the plan and the
license's active add-ons. Nothing here is cached.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from licensing.catalog.models import AddOn, Plan
from licensing.core.constants import USAGE_WARNING_THRESHOLD
from licensing.core.results import ErrorKind
from licensing.core.types import LimitKey
from licensing.licenses.license import License


@dataclass(frozen=True)
class LimitCheck:
    key: LimitKey
    allowed: bool
    used: int | float
    limit: int | float          # -1 = unlimited
    percent: float
    warning: bool = False
    code: ErrorKind | None = None

    @property
    def unlimited(self) -> bool:
        return self.limit == -1

    def as_dict(self) -> dict[str, object]:
        return {
            "key": self.key.value,
            "allowed": self.allowed,
            "used": self.used,
            "limit": self.limit,
            "percent": self.percent,
            "warning": self.warning,
            "code": self.code.value if self.code else None,
        }


def effective_limit(
    license: License,
    plan: Plan,
    key: LimitKey,
    addons: Mapping[str, AddOn],
) -> int | float:
    """Plan limit plus extras from active add-on grants.

    Only the plan's own -1 means unlimited. Grant extras scale with the
    grant quantity.
    """
    if plan.is_unlimited(key):
        return -1
    total = plan.limit_for(key)
    for grant in license.active_grants():
        addon = addons.get(grant.slug)
        if addon is None:
            continue
        total += addon.extra_for(key) * grant.quantity
    return key.coerce(total)


def check_limit(
    license: License,
    plan: Plan,
    key: LimitKey,
    addons: Mapping[str, AddOn] | None = None,
    *,
    requested: int | float = 0,
    warning_threshold: float = USAGE_WARNING_THRESHOLD,
) -> LimitCheck:
    """Check whether ``key`` still has room.

    With ``requested`` > 0 the check asks whether that many more units fit,
    which is what ``consume`` uses; the plain call answers ``used < limit``.
    """
    used = license.usage_of(key.usage_key)
    limit = effective_limit(license, plan, key, addons or {})
    if limit == -1:
        return LimitCheck(key=key, allowed=True, used=used, limit=-1, percent=0.0)

    if limit <= 0:
        percent = 100.0
    else:
        percent = round(used / limit * 100, 2)

    allowed = used < limit if requested <= 0 else used + requested <= limit
    code = None if allowed else ErrorKind.LIMIT_REACHED
    warning = allowed and warning_threshold * 100 <= percent < 100
    return LimitCheck(
        key=key,
        allowed=allowed,
        used=used,
        limit=limit,
        percent=percent,
        warning=warning,
        code=code,
    )


def has_module(
    license: License,
    plan: Plan,
    module: str,
    addons: Mapping[str, AddOn] | None = None,
) -> bool:
    if plan.includes_module(module):
        return True
    for grant in license.active_grants():
        addon = (addons or {}).get(grant.slug)
        if addon is not None and module in addon.modules:
            return True
    return False
