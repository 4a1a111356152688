"""License aggregate: per-tenant entitlement record and its state machine.

All mutation logic lives here. Methods raise ``InvalidStateError`` for
transitions the state machine does not allow; the licensing service turns
those into typed results for callers.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from licensing.billing.proration import cycle_days
from licensing.catalog.models import AddOn, Plan
from licensing.core.exceptions import InvalidStateError
from licensing.core.types import (
    AddOnGrant,
    AuditAction,
    AuditEntry,
    GatewaySubscriptionRef,
    LicenseState,
    SubscriptionType,
    UsageKey,
)

S = LicenseState

LICENSE_TRANSITIONS: dict[LicenseState, frozenset[LicenseState]] = {
    S.TRIAL: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.ACTIVE: frozenset({S.SUSPENDED, S.CANCELLED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset({S.CANCELLED, S.EXPIRED})


@dataclass
class License:
    """Aggregate root, one per company."""

    company_id: str
    plan_id: str
    state: LicenseState = S.TRIAL
    is_trial: bool = True
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    subscription_type: SubscriptionType = SubscriptionType.MONTHLY
    start_date: datetime | None = None
    renewal_date: datetime | None = None
    cancellation_date: datetime | None = None
    auto_renew: bool = True
    pending_plan_id: str | None = None
    pending_plan_payment_id: str | None = None
    pending_subscription_type: SubscriptionType | None = None
    pending_addon_slugs: set[str] = field(default_factory=set)
    pending_addons_payment_id: str | None = None
    scheduled_plan_id: str | None = None
    addons: list[AddOnGrant] = field(default_factory=list)
    usage: dict[UsageKey, int | float] = field(default_factory=dict)
    gateway_subscription_ref: GatewaySubscriptionRef | None = None
    history: list[AuditEntry] = field(default_factory=list)
    version: int = 0
    _plan: Plan | None = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def start_trial(
        cls,
        company_id: str,
        plan: Plan,
        now: datetime,
        trial_days: int,
    ) -> License:
        trial_end = now + timedelta(days=trial_days)
        lic = cls(
            company_id=company_id,
            plan_id=plan.plan_id,
            state=S.TRIAL,
            is_trial=True,
            trial_start=now,
            trial_end=trial_end,
            start_date=now,
            renewal_date=trial_end,
        )
        lic.attach_plan(plan)
        lic._audit(AuditAction.CREACION, f"trial on {plan.slug} for {trial_days} days", now)
        return lic

    # ── Plan snapshot ────────────────────────────────────────────

    @property
    def plan_snapshot(self) -> Plan | None:
        """Cached catalog plan for ``plan_id``; never persisted."""
        if self._plan is not None and self._plan.plan_id != self.plan_id:
            self._plan = None
        return self._plan

    def attach_plan(self, plan: Plan) -> None:
        if plan.plan_id != self.plan_id:
            msg = f"plan {plan.plan_id} does not match license plan {self.plan_id}"
            raise ValueError(msg)
        self._plan = plan

    def _set_plan(self, plan_id: str) -> None:
        self.plan_id = plan_id
        self._plan = None

    # ── State queries ────────────────────────────────────────────

    def is_trial_expired(self, now: datetime) -> bool:
        return self.is_trial and self.trial_end is not None and now > self.trial_end

    def is_active(self, now: datetime) -> bool:
        if self.state in (S.SUSPENDED, S.CANCELLED):
            return False
        if self.is_trial:
            return not self.is_trial_expired(now)
        return self.state == S.ACTIVE

    def refresh(self, now: datetime) -> bool:
        """Apply lazy trial expiry. Returns True if the license changed."""
        if self.state == S.TRIAL and self.is_trial_expired(now):
            self._transition(S.EXPIRED)
            self._audit(AuditAction.TRIAL_EXPIRED, f"trial ended {self.trial_end}", now)
            return True
        return False

    def active_grants(self) -> list[AddOnGrant]:
        return [g for g in self.addons if g.active]

    def grant_for(self, slug: str) -> AddOnGrant | None:
        return next((g for g in self.addons if g.active and g.slug == slug), None)

    def usage_of(self, key: UsageKey) -> int | float:
        return key.numeric_type(self.usage.get(key, 0))

    @property
    def last_event(self) -> AuditEntry | None:
        return self.history[-1] if self.history else None

    # ── Internal helpers ─────────────────────────────────────────

    def _transition(self, new_state: LicenseState, *, resubscribe: bool = False) -> None:
        if new_state == self.state:
            return
        allowed = new_state in LICENSE_TRANSITIONS[self.state]
        if resubscribe and self.state in TERMINAL_STATES and new_state == S.ACTIVE:
            allowed = True
        if not allowed:
            raise InvalidStateError(
                f"license cannot move from {self.state.value} to {new_state.value}",
                context={"company_id": self.company_id},
            )
        self.state = new_state

    def _audit(
        self,
        action: AuditAction,
        detail: str,
        now: datetime,
        payment_id: str | None = None,
    ) -> None:
        # Entries stay ordered even if a caller's clock steps backwards.
        last = self.last_event
        timestamp = now if last is None or now >= last.timestamp else last.timestamp
        self.history.append(
            AuditEntry(timestamp=timestamp, action=action, detail=detail, payment_id=payment_id)
        )

    def _require_mutable(self, operation: str) -> None:
        if self.state in TERMINAL_STATES:
            raise InvalidStateError(
                f"cannot {operation} a {self.state.value} license",
                context={"company_id": self.company_id},
            )

    def _next_renewal(self, now: datetime) -> datetime:
        return now + timedelta(days=cycle_days(self.subscription_type))

    # ── Plan changes ─────────────────────────────────────────────

    def change_plan(self, plan_id: str, now: datetime) -> None:
        """Switch plan immediately and start a new cycle."""
        self._require_mutable("change plan of")
        old = self.plan_id
        self._transition(S.ACTIVE)
        self._set_plan(plan_id)
        self.is_trial = False
        self.scheduled_plan_id = None
        self.renewal_date = self._next_renewal(now)
        self._audit(AuditAction.CAMBIO_PLAN, f"{old} -> {plan_id}", now)

    def schedule_downgrade(self, plan_id: str, now: datetime) -> None:
        self._require_mutable("schedule a plan change on")
        self.scheduled_plan_id = plan_id
        self._audit(
            AuditAction.CAMBIO_PLAN_PROGRAMADO,
            f"{self.plan_id} -> {plan_id} at {self.renewal_date}",
            now,
        )

    # ── Pending purchases ────────────────────────────────────────

    def begin_plan_purchase(
        self,
        plan_id: str,
        payment_id: str,
        subscription_type: SubscriptionType,
        now: datetime,
    ) -> None:
        """Record a plan purchase awaiting payment, replacing any earlier one."""
        self.pending_plan_id = plan_id
        self.pending_plan_payment_id = payment_id
        self.pending_subscription_type = subscription_type
        self._audit(AuditAction.INICIO_COMPRA, f"plan {plan_id}", now, payment_id)

    def begin_addon_purchase(self, slugs: Iterable[str], payment_id: str, now: datetime) -> None:
        """Record add-ons awaiting payment. The pending set is replaced, never merged."""
        slugs = set(slugs)
        if not slugs:
            raise InvalidStateError("no add-ons requested", context={"company_id": self.company_id})
        self.pending_addon_slugs = slugs
        self.pending_addons_payment_id = payment_id
        self._audit(
            AuditAction.INICIO_COMPRA, f"add-ons {', '.join(sorted(slugs))}", now, payment_id
        )

    def clear_pending_plan(self) -> None:
        self.pending_plan_id = None
        self.pending_plan_payment_id = None
        self.pending_subscription_type = None

    def clear_pending_addons(self) -> None:
        self.pending_addon_slugs = set()
        self.pending_addons_payment_id = None

    def pending_plan_for(self, payment_id: str) -> str | None:
        """Pending plan funded by ``payment_id`` (unlinked pending counts too)."""
        if self.pending_plan_id and self.pending_plan_payment_id in (None, payment_id):
            return self.pending_plan_id
        return None

    def pending_addons_for(self, payment_id: str) -> set[str]:
        if self.pending_addon_slugs and self.pending_addons_payment_id in (None, payment_id):
            return set(self.pending_addon_slugs)
        return set()

    def commit_pending_plan(self, payment_id: str, now: datetime) -> bool:
        plan_id = self.pending_plan_for(payment_id)
        if plan_id is None:
            return False
        subscription_type = self.pending_subscription_type
        self.clear_pending_plan()
        self.commit_plan(plan_id, subscription_type, payment_id, now)
        return True

    def commit_plan(
        self,
        plan_id: str,
        subscription_type: SubscriptionType | None,
        payment_id: str,
        now: datetime,
    ) -> None:
        """Apply a paid plan. Pending fields of other purchases are left alone."""
        old = self.plan_id
        if subscription_type is not None:
            self.subscription_type = subscription_type
        self._set_plan(plan_id)
        self.scheduled_plan_id = None
        self._audit(AuditAction.CAMBIO_PLAN, f"{old} -> {plan_id}", now, payment_id)

    def grant_addons(
        self,
        addons: Iterable[tuple[AddOn, int]],
        payment_id: str,
        now: datetime,
    ) -> list[str]:
        """Activate paid add-ons, skipping any slug that is already active."""
        granted: list[str] = []
        for addon, quantity in addons:
            if self.grant_for(addon.slug) is not None:
                continue
            self.addons.append(
                AddOnGrant(
                    addon_id=addon.addon_id,
                    slug=addon.slug,
                    quantity=quantity,
                    monthly_price=addon.monthly_price if addon.recurring else Decimal("0"),
                    active=True,
                    activated_at=now,
                )
            )
            granted.append(addon.slug)
        if self.pending_addons_payment_id in (None, payment_id):
            self.clear_pending_addons()
        if granted:
            self._audit(AuditAction.ACTIVACION_ADDONS, ", ".join(granted), now, payment_id)
        return granted

    # ── Subscription lifecycle ───────────────────────────────────

    def activate_subscription(self, now: datetime, payment_id: str | None = None) -> None:
        """Start a paid subscription (trial conversion or re-subscription)."""
        was = self.state
        self._transition(S.ACTIVE, resubscribe=True)
        self.is_trial = False
        self.start_date = now
        self.renewal_date = self._next_renewal(now)
        self.cancellation_date = None
        self.auto_renew = True
        action = AuditAction.REACTIVACION if was in TERMINAL_STATES else AuditAction.ACTIVACION
        self._audit(action, f"{was.value} -> active", now, payment_id)

    def renew(self, now: datetime, payment_id: str | None = None) -> None:
        """Extend the current subscription by one cycle."""
        self._require_mutable("renew")
        if self.state == S.SUSPENDED:
            self._transition(S.ACTIVE)
        base = self.renewal_date if self.renewal_date and self.renewal_date > now else now
        self.renewal_date = self._next_renewal(base)
        self._audit(AuditAction.RENOVACION, f"renews {self.renewal_date.date()}", now, payment_id)

    def suspend(self, now: datetime, reason: str = "") -> None:
        self._transition(S.SUSPENDED)
        self._audit(AuditAction.SUSPENSION, reason, now)

    def resume(self, now: datetime, reason: str = "") -> None:
        if self.state != S.SUSPENDED:
            raise InvalidStateError(
                f"cannot resume a {self.state.value} license",
                context={"company_id": self.company_id},
            )
        self._transition(S.ACTIVE)
        self._audit(AuditAction.REACTIVACION, reason, now)

    def cancel(self, immediate: bool, now: datetime, reason: str = "") -> None:
        self._require_mutable("cancel")
        if immediate:
            self._transition(S.CANCELLED)
            self.cancellation_date = now
            self.auto_renew = False
            self._audit(AuditAction.CANCELACION, reason or "immediate", now)
        else:
            self.auto_renew = False
            self._audit(
                AuditAction.CANCELACION_PROGRAMADA,
                reason or f"ends {self.renewal_date}",
                now,
            )

    def set_auto_renew(self, enabled: bool, now: datetime) -> None:
        self._require_mutable("change auto-renew on")
        self.auto_renew = enabled
        self._audit(AuditAction.AUTO_RENOVACION, "enabled" if enabled else "disabled", now)

    def cancel_addon(self, slug: str, immediate: bool, now: datetime) -> AddOnGrant:
        grant = self.grant_for(slug)
        if grant is None:
            raise InvalidStateError(
                f"add-on {slug} is not active",
                context={"company_id": self.company_id, "slug": slug},
            )
        if immediate:
            grant.active = False
            grant.cancelled_at = now
            self._audit(AuditAction.CANCELACION_ADDON, f"{slug} immediate", now)
        else:
            grant.cancel_at_renewal = True
            self._audit(AuditAction.CANCELACION_ADDON, f"{slug} at renewal", now)
        return grant

    def apply_renewal(self, now: datetime) -> list[AuditAction]:
        """Apply changes that were deferred to the end of the cycle.

        Deferred cancellation finalises the license; otherwise a scheduled
        downgrade takes effect and add-ons flagged for cancellation are
        dropped.
        """
        if self.renewal_date is None or now <= self.renewal_date:
            return []
        if self.state not in (S.ACTIVE, S.SUSPENDED):
            return []

        applied: list[AuditAction] = []
        if not self.auto_renew:
            self._transition(S.CANCELLED)
            self.cancellation_date = now
            self._audit(AuditAction.CANCELACION, "cycle ended without renewal", now)
            return [AuditAction.CANCELACION]

        if self.scheduled_plan_id:
            old = self.plan_id
            self._set_plan(self.scheduled_plan_id)
            self.scheduled_plan_id = None
            self._audit(AuditAction.CAMBIO_PLAN, f"{old} -> {self.plan_id} at renewal", now)
            applied.append(AuditAction.CAMBIO_PLAN)

        for grant in self.addons:
            if grant.active and grant.cancel_at_renewal:
                grant.active = False
                grant.cancelled_at = now
                self._audit(AuditAction.CANCELACION_ADDON, f"{grant.slug} removed at renewal", now)
                applied.append(AuditAction.CANCELACION_ADDON)
        return applied

    # ── Payment audit ────────────────────────────────────────────

    def record_payment_failure(
        self, payment_id: str | None, now: datetime, detail: str = ""
    ) -> None:
        self._audit(AuditAction.PAGO_FALLIDO, detail, now, payment_id)

    def record_refund(self, payment_id: str, now: datetime) -> None:
        self._audit(AuditAction.PAGO_REEMBOLSADO, "grants kept", now, payment_id)

    def set_subscription_ref(self, ref: GatewaySubscriptionRef | None) -> None:
        self.gateway_subscription_ref = ref
