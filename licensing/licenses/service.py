"""Licensing service: tenant-facing actions on the license aggregate.

Every mutation is a read-modify-write under the tenant lock, followed by a
version-checked save. Business rule violations come back as ``Outcome``
failures; storage and gateway failures propagate as exceptions.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from decimal import Decimal

from licensing.billing.proration import (
    ProrationQuote,
    QuoteLine,
    TaxBreakdown,
    cycle_days,
    quote_addons,
    quote_upgrade,
    round2,
)
from licensing.billing.summary import BillingSummary, build_billing_summary, resolve_plan
from licensing.catalog.models import AddOn, Plan
from licensing.catalog.registry import CatalogService
from licensing.core.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_IVA_RATE,
    DEFAULT_TRIAL_DAYS,
    TRIAL_PLAN_SLUG,
    USAGE_WARNING_THRESHOLD,
)
from licensing.core.exceptions import InvalidStateError, NotFoundError
from licensing.core.interfaces import GatewayAdapter, LicensingStore, TenantLocks
from licensing.core.logging import get_logger
from licensing.core.results import ErrorKind, Outcome
from licensing.core.types import (
    Gateway,
    LimitKey,
    Payment,
    PaymentConcept,
    PaymentState,
    PurchaseInitiation,
    SubscriptionType,
    UsageKey,
    utcnow,
)
from licensing.licenses.license import TERMINAL_STATES, License
from licensing.licenses.limiter import LimitCheck, check_limit
from licensing.licenses.limiter import has_module as plan_has_module

log = get_logger(__name__)

Mutation = Callable[[License, datetime], None]


class LicensingService:
    def __init__(
        self,
        store: LicensingStore,
        catalog: CatalogService,
        adapters: Mapping[Gateway, GatewayAdapter],
        locks: TenantLocks,
        *,
        trial_days: int = DEFAULT_TRIAL_DAYS,
        trial_plan_slug: str = TRIAL_PLAN_SLUG,
        iva_rate: Decimal = DEFAULT_IVA_RATE,
        currency: str = DEFAULT_CURRENCY,
        warning_threshold: float = USAGE_WARNING_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._adapters = dict(adapters)
        self._locks = locks
        self._trial_days = trial_days
        self._trial_plan_slug = trial_plan_slug
        self._iva_rate = iva_rate
        self._currency = currency
        self._warning_threshold = warning_threshold
        self._clock = clock

    # ── Signup ───────────────────────────────────────────────────

    async def create_trial(self, company_id: str, plan_slug: str | None = None) -> Outcome[License]:
        slug = plan_slug or self._trial_plan_slug
        plan = await self._catalog.get_plan_by_slug(slug)
        if plan is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "plan not found", slug=slug)

        async with self._locks.hold(company_id):
            if await self._store.licenses.get(company_id) is not None:
                return Outcome.failure(
                    ErrorKind.INVALID_STATE, "license already exists", company_id=company_id
                )
            license = License.start_trial(company_id, plan, self._clock(), self._trial_days)
            await self._store.licenses.create(license)

        log.info(
            "license_created",
            company_id=company_id,
            plan=plan.slug,
            trial_end=license.trial_end.isoformat() if license.trial_end else None,
        )
        return Outcome.success(license)

    # ── Queries ──────────────────────────────────────────────────

    async def get_license(self, company_id: str) -> License | None:
        """Current license with lazy trial expiry applied and persisted."""
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is not None and license.refresh(self._clock()):
                await self._store.licenses.save(license)
                log.info("trial_expired", company_id=company_id)
        return license

    async def payment_history(self, company_id: str, limit: int = 50) -> list[Payment]:
        """Newest-first payments of a company, for support and manual reconciliation."""
        return await self._store.payments.list_for_company(company_id, limit)

    async def billing_summary(self, company_id: str) -> BillingSummary:
        license = await self._require(company_id)
        return await build_billing_summary(license, self._catalog, self._currency)

    async def check_limit(self, company_id: str, key: LimitKey) -> LimitCheck:
        license = await self._require(company_id)
        plan = await resolve_plan(license, self._catalog)
        return check_limit(
            license,
            plan,
            key,
            await self._catalog.addons_by_slug(),
            warning_threshold=self._warning_threshold,
        )

    async def has_module(self, company_id: str, module: str) -> bool:
        license = await self.get_license(company_id)
        if license is None or not license.is_active(self._clock()):
            return False
        plan = await resolve_plan(license, self._catalog)
        return plan_has_module(license, plan, module, await self._catalog.addons_by_slug())

    async def require_module(self, company_id: str, module: str) -> Outcome[None]:
        if await self.has_module(company_id, module):
            return Outcome.success()
        return Outcome.failure(
            ErrorKind.MODULE_NOT_INCLUDED,
            f"module {module} is not included in the license",
            company_id=company_id,
            module=module,
        )

    async def quote_plan_change(self, company_id: str, plan_slug: str) -> Outcome[ProrationQuote]:
        license = await self._require(company_id)
        target = await self._catalog.get_plan_by_slug(plan_slug)
        if target is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "plan not found", slug=plan_slug)
        current = await resolve_plan(license, self._catalog)
        return Outcome.success(
            quote_upgrade(
                current, target, license.subscription_type, license.renewal_date, self._clock()
            )
        )

    # ── Usage ────────────────────────────────────────────────────

    async def consume(
        self, company_id: str, key: LimitKey, amount: int | float = 1
    ) -> Outcome[LimitCheck]:
        """Check the quota for ``amount`` more units, then count them.

        A warning near the limit is reported through ``Outcome.message`` and
        the ``warning`` flag; the action itself still succeeds.
        """
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            now = self._clock()
            if license.refresh(now):
                await self._store.licenses.save(license)
            if not license.is_active(now):
                return Outcome.failure(
                    ErrorKind.INVALID_STATE,
                    f"license is {license.state.value}",
                    company_id=company_id,
                )

            plan = await resolve_plan(license, self._catalog)
            check = check_limit(
                license,
                plan,
                key,
                await self._catalog.addons_by_slug(),
                requested=amount,
                warning_threshold=self._warning_threshold,
            )
            if not check.allowed:
                log.info("limit_reached", company_id=company_id, key=key.value, used=check.used, limit=check.limit)
                return Outcome.failure(ErrorKind.LIMIT_REACHED, "limit reached", **check.as_dict())
            await self._store.licenses.increment_usage(company_id, key.usage_key, amount)

        if check.warning:
            log.info("limit_warning", company_id=company_id, key=key.value, percent=check.percent)
            return Outcome.success(check, message=f"{check.percent:.0f}% of {key.value} used")
        return Outcome.success(check)

    async def increment_usage(
        self, company_id: str, key: UsageKey, amount: int | float = 1
    ) -> int | float:
        """Atomic counter increment; no tenant lock needed."""
        return await self._store.licenses.increment_usage(company_id, key, amount)

    async def release_usage(
        self, company_id: str, key: UsageKey, amount: int | float = 1
    ) -> int | float:
        return await self._store.licenses.increment_usage(company_id, key, -amount)

    # ── Purchases ────────────────────────────────────────────────

    async def purchase_plan(
        self,
        company_id: str,
        plan_slug: str,
        gateway: Gateway,
        subscription_type: SubscriptionType | None = None,
        addon_slugs: Mapping[str, int] | Iterable[str] = (),
        *,
        replace_pending: bool = False,
    ) -> Outcome[PurchaseInitiation | License]:
        """Start a plan purchase.

        Trials and ended licenses pay a full cycle of the new plan. Active
        licenses pay the prorated difference for an upgrade; a downgrade is
        scheduled for the next renewal with no payment and the updated
        license is returned instead of a purchase.
        """
        target = await self._catalog.get_plan_by_slug(plan_slug)
        if target is None or not target.active:
            return Outcome.failure(ErrorKind.NOT_FOUND, "plan not found", slug=plan_slug)
        quantities = _quantities(addon_slugs)
        addons = await self._resolve_addons(quantities)
        if isinstance(addons, Outcome):
            return addons

        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            now = self._clock()
            if license.refresh(now):
                await self._store.licenses.save(license)

            new_subscription = license.is_trial or license.state in TERMINAL_STATES
            cycle = subscription_type or license.subscription_type
            current = await resolve_plan(license, self._catalog)

            if not new_subscription:
                if cycle != license.subscription_type:
                    return Outcome.failure(
                        ErrorKind.INVALID_STATE,
                        "billing cycle can only change on a new subscription",
                        current=license.subscription_type.value,
                        requested=cycle.value,
                    )
                if target.plan_id == current.plan_id:
                    return Outcome.failure(
                        ErrorKind.INVALID_STATE, "already on this plan", slug=plan_slug
                    )
                upgrade = quote_upgrade(current, target, license.subscription_type, license.renewal_date, now)
                if not upgrade.is_upgrade:
                    if addons:
                        return Outcome.failure(
                            ErrorKind.NOT_AN_UPGRADE,
                            "add-ons cannot be bought together with a downgrade",
                            slug=plan_slug,
                        )
                    return await self._mutate_unlocked(
                        license, "schedule_downgrade",
                        lambda lic, at: lic.schedule_downgrade(target.plan_id, at),
                    )
                quote = upgrade
                concept = PaymentConcept.UPGRADE
            else:
                quote = _full_cycle_quote(target, cycle)
                concept = PaymentConcept.SUBSCRIPTION

            blocked = await self._pending_block(license, plan=True, addons=bool(addons), replace=replace_pending)
            if blocked is not None:
                return blocked
            if addons:
                active = [a.slug for a, _ in addons if license.grant_for(a.slug) is not None]
                if active:
                    return Outcome.failure(
                        ErrorKind.ADDON_ALREADY_ACTIVE, "add-on already active", slugs=active
                    )
                addon_quote = quote_addons(
                    addons, cycle, license.renewal_date, now, full_cycle=new_subscription
                )
                quote = ProrationQuote(
                    lines=quote.lines + addon_quote.lines,
                    days_remaining=quote.days_remaining,
                    cycle_days=quote.cycle_days,
                )

            initiation = await self._initiate(
                license, gateway, concept, quote.with_tax(self._iva_rate),
                description=f"Plan {target.name}",
                metadata={
                    "plan_slug": target.slug,
                    "subscription_type": cycle.value,
                    "addon_quantities": {a.slug: q for a, q in addons},
                },
            )
            if isinstance(initiation, Outcome):
                return initiation

            payment_id = initiation.payment.payment_id

            def begin(lic: License, at: datetime) -> None:
                lic.begin_plan_purchase(target.plan_id, payment_id, cycle, at)
                if addons:
                    lic.begin_addon_purchase([a.slug for a, _ in addons], payment_id, at)

            outcome = await self._mutate_unlocked(license, "purchase_plan", begin)
            if not outcome.ok:
                return outcome
        return Outcome.success(initiation)

    async def purchase_addons(
        self,
        company_id: str,
        addon_slugs: Mapping[str, int] | Iterable[str],
        gateway: Gateway,
        *,
        replace_pending: bool = False,
    ) -> Outcome[PurchaseInitiation | License]:
        """Buy add-ons for the current cycle, prorated to the renewal date."""
        quantities = _quantities(addon_slugs)
        if not quantities:
            return Outcome.failure(ErrorKind.INVALID_STATE, "no add-ons requested")
        addons = await self._resolve_addons(quantities)
        if isinstance(addons, Outcome):
            return addons

        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            now = self._clock()
            if license.refresh(now):
                await self._store.licenses.save(license)
            if license.state in TERMINAL_STATES:
                return Outcome.failure(
                    ErrorKind.INVALID_STATE,
                    f"cannot buy add-ons for a {license.state.value} license",
                    company_id=company_id,
                )

            active = [a.slug for a, _ in addons if license.grant_for(a.slug) is not None]
            if active:
                return Outcome.failure(
                    ErrorKind.ADDON_ALREADY_ACTIVE, "add-on already active", slugs=active
                )
            blocked = await self._pending_block(license, plan=False, addons=True, replace=replace_pending)
            if blocked is not None:
                return blocked

            quote = quote_addons(
                addons,
                license.subscription_type,
                license.renewal_date,
                now,
                full_cycle=license.is_trial,
            )
            initiation = await self._initiate(
                license, gateway, PaymentConcept.ADDON, quote.with_tax(self._iva_rate),
                description="Add-ons: " + ", ".join(a.name for a, _ in addons),
                metadata={"addon_quantities": {a.slug: q for a, q in addons}},
            )
            if isinstance(initiation, Outcome):
                return initiation

            payment_id = initiation.payment.payment_id
            outcome = await self._mutate_unlocked(
                license,
                "purchase_addons",
                lambda lic, at: lic.begin_addon_purchase([a.slug for a, _ in addons], payment_id, at),
            )
            if not outcome.ok:
                return outcome
        return Outcome.success(initiation)

    async def _resolve_addons(
        self, quantities: Mapping[str, int]
    ) -> list[tuple[AddOn, int]] | Outcome[PurchaseInitiation | License]:
        catalog = await self._catalog.addons_by_slug()
        missing = [slug for slug in quantities if slug not in catalog or not catalog[slug].active]
        if missing:
            return Outcome.failure(ErrorKind.NOT_FOUND, "add-on not found", slugs=missing)
        bad = [slug for slug, qty in quantities.items() if qty < 1]
        if bad:
            return Outcome.failure(ErrorKind.INVALID_STATE, "quantity must be at least 1", slugs=bad)
        return [(catalog[slug], qty) for slug, qty in sorted(quantities.items())]

    async def _pending_block(
        self, license: License, *, plan: bool, addons: bool, replace: bool
    ) -> Outcome[PurchaseInitiation | License] | None:
        """Reject a second purchase of a kind whose payment is still open."""
        linked: list[str] = []
        if plan and license.pending_plan_id and license.pending_plan_payment_id:
            linked.append(license.pending_plan_payment_id)
        if addons and license.pending_addon_slugs and license.pending_addons_payment_id:
            linked.append(license.pending_addons_payment_id)
        if replace:
            return None
        for payment_id in linked:
            payment = await self._store.payments.get(payment_id)
            if payment is not None and payment.state in (PaymentState.PENDING, PaymentState.PROCESSING):
                return Outcome.failure(
                    ErrorKind.PURCHASE_PENDING,
                    "a purchase of this kind is awaiting payment",
                    payment_id=payment_id,
                )
        return None

    async def _initiate(
        self,
        license: License,
        gateway: Gateway,
        concept: PaymentConcept,
        charge: TaxBreakdown,
        *,
        description: str,
        metadata: dict[str, object],
    ) -> PurchaseInitiation | Outcome[PurchaseInitiation | License]:
        adapter = self._adapters.get(gateway)
        if adapter is None:
            return Outcome.failure(
                ErrorKind.NOT_FOUND, "payment gateway not configured", gateway=gateway.value
            )
        # The payment is persisted by the adapter before the license records
        # anything pending; GatewayError propagates to the caller as retryable.
        initiation = await adapter.initiate_purchase(
            license.company_id,
            charge.total,
            self._currency,
            concept,
            metadata,
            description=description,
            subtotal=charge.subtotal,
            tax=charge.iva,
        )
        log.info(
            "purchase_initiated",
            company_id=license.company_id,
            payment_id=initiation.payment.payment_id,
            gateway=gateway.value,
            concept=concept.value,
            total=str(charge.total),
            status=initiation.status,
        )
        return initiation

    # ── Plan and lifecycle actions ───────────────────────────────

    async def change_plan(self, company_id: str, plan_slug: str) -> Outcome[License]:
        """Switch plan immediately without a payment (support action)."""
        plan = await self._catalog.get_plan_by_slug(plan_slug)
        if plan is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "plan not found", slug=plan_slug)
        return await self._mutate(company_id, "change_plan", lambda lic, at: lic.change_plan(plan.plan_id, at))

    async def cancel_addon(self, company_id: str, slug: str, immediate: bool = False) -> Outcome[License]:
        return await self._mutate(
            company_id, "cancel_addon", lambda lic, at: lic.cancel_addon(slug, immediate, at)
        )

    async def cancel(self, company_id: str, immediate: bool = False, reason: str = "") -> Outcome[License]:
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            if license.refresh(self._clock()):
                await self._store.licenses.save(license)
            ref = license.gateway_subscription_ref
            if ref is not None and license.state not in TERMINAL_STATES:
                adapter = self._adapters.get(ref.gateway)
                if adapter is not None:
                    if immediate:
                        await adapter.cancel_subscription(ref.external_id)
                    else:
                        await adapter.toggle_auto_renew(ref.external_id, False)
            return await self._mutate_unlocked(
                license, "cancel", lambda lic, at: lic.cancel(immediate, at, reason)
            )

    async def set_auto_renew(self, company_id: str, enabled: bool) -> Outcome[License]:
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            if license.refresh(self._clock()):
                await self._store.licenses.save(license)
            ref = license.gateway_subscription_ref
            if ref is not None and license.state not in TERMINAL_STATES:
                adapter = self._adapters.get(ref.gateway)
                if adapter is not None:
                    await adapter.toggle_auto_renew(ref.external_id, enabled)
            return await self._mutate_unlocked(
                license, "set_auto_renew", lambda lic, at: lic.set_auto_renew(enabled, at)
            )

    # ── Internals ────────────────────────────────────────────────

    async def _require(self, company_id: str) -> License:
        license = await self.get_license(company_id)
        if license is None:
            raise NotFoundError("license not found", context={"company_id": company_id})
        return license

    async def _mutate(self, company_id: str, operation: str, mutate: Mutation) -> Outcome[License]:
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "license not found", company_id=company_id)
            return await self._mutate_unlocked(license, operation, mutate)

    async def _mutate_unlocked(
        self, license: License, operation: str, mutate: Mutation
    ) -> Outcome[License]:
        """Apply ``mutate`` and save. The caller holds the tenant lock."""
        now = self._clock()
        expired = license.refresh(now)
        try:
            mutate(license, now)
        except InvalidStateError as exc:
            if expired:
                await self._store.licenses.save(license)
            log.info(
                "license_action_rejected",
                company_id=license.company_id,
                operation=operation,
                state=license.state.value,
                reason=str(exc),
            )
            return Outcome.failure(ErrorKind.INVALID_STATE, str(exc), **exc.context)

        await self._store.licenses.save(license)
        log.info(
            "license_updated",
            company_id=license.company_id,
            operation=operation,
            state=license.state.value,
            plan_id=license.plan_id,
        )
        return Outcome.success(license)


def _quantities(addon_slugs: Mapping[str, int] | Iterable[str]) -> dict[str, int]:
    if isinstance(addon_slugs, Mapping):
        return {slug: int(qty) for slug, qty in addon_slugs.items()}
    return {slug: 1 for slug in addon_slugs}


def _full_cycle_quote(plan: Plan, subscription_type: SubscriptionType) -> ProrationQuote:
    """A new subscription pays the whole first cycle."""
    price = plan.price_for(subscription_type)
    line = QuoteLine(
        description=f"{plan.name} ({subscription_type.value})",
        full_price=price,
        amount=round2(price),
        slug=plan.slug,
    )
    cycle = cycle_days(subscription_type)
    return ProrationQuote(lines=(line,), days_remaining=cycle, cycle_days=cycle)
