"""Tests for the license aggregate and its state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from licensing.catalog.seed import DEFAULT_ADDONS, DEFAULT_PLANS
from licensing.core.exceptions import InvalidStateError
from licensing.core.types import (
    AddOnGrant,
    AuditAction,
    Gateway,
    GatewaySubscriptionRef,
    LicenseState,
    SubscriptionType,
)
from licensing.licenses.license import License

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
PLANS = {p.slug: p for p in DEFAULT_PLANS}
ADDONS = {a.slug: a for a in DEFAULT_ADDONS}


def _trial() -> License:
    return License.start_trial("c1", PLANS["demo"], NOW, trial_days=30)


def _active(plan: str = "basico") -> License:
    lic = _trial()
    lic.begin_plan_purchase(PLANS[plan].plan_id, "pay-1", SubscriptionType.MONTHLY, NOW)
    lic.commit_pending_plan("pay-1", NOW)
    lic.activate_subscription(NOW, "pay-1")
    return lic


def _actions(lic: License) -> list[AuditAction]:
    return [e.action for e in lic.history]


class TestTrial:
    def test_start_trial(self) -> None:
        lic = _trial()
        assert lic.state == LicenseState.TRIAL
        assert lic.is_trial
        assert lic.trial_end == NOW + timedelta(days=30)
        assert lic.renewal_date == lic.trial_end
        assert lic.plan_snapshot is PLANS["demo"]
        assert _actions(lic) == [AuditAction.CREACION]

    def test_active_during_trial(self) -> None:
        assert _trial().is_active(NOW + timedelta(days=29))

    def test_expired_trial_inactive_without_refresh(self) -> None:
        lic = _trial()
        later = NOW + timedelta(days=31)
        assert lic.state == LicenseState.TRIAL
        assert not lic.is_active(later)

    def test_refresh_expires_once(self) -> None:
        lic = _trial()
        later = NOW + timedelta(days=31)
        assert lic.refresh(later) is True
        assert lic.state == LicenseState.EXPIRED
        assert lic.refresh(later) is False
        assert _actions(lic).count(AuditAction.TRIAL_EXPIRED) == 1

    def test_refresh_before_end_is_noop(self) -> None:
        lic = _trial()
        assert lic.refresh(NOW + timedelta(days=5)) is False
        assert lic.state == LicenseState.TRIAL


class TestActivation:
    def test_trial_conversion(self) -> None:
        lic = _active()
        assert lic.state == LicenseState.ACTIVE
        assert not lic.is_trial
        assert lic.plan_id == PLANS["basico"].plan_id
        assert lic.renewal_date == NOW + timedelta(days=30)
        assert lic.pending_plan_id is None
        assert lic.last_event is not None
        assert lic.last_event.action == AuditAction.ACTIVACION

    def test_annual_cycle(self) -> None:
        lic = _trial()
        lic.begin_plan_purchase(PLANS["basico"].plan_id, "pay-1", SubscriptionType.ANNUAL, NOW)
        lic.commit_pending_plan("pay-1", NOW)
        lic.activate_subscription(NOW, "pay-1")
        assert lic.subscription_type == SubscriptionType.ANNUAL
        assert lic.renewal_date == NOW + timedelta(days=365)

    def test_resubscribe_after_expiry(self) -> None:
        lic = _trial()
        lic.refresh(NOW + timedelta(days=31))
        lic.activate_subscription(NOW + timedelta(days=32), "pay-2")
        assert lic.state == LicenseState.ACTIVE
        assert lic.last_event is not None
        assert lic.last_event.action == AuditAction.REACTIVACION

    def test_commit_ignores_other_payment(self) -> None:
        lic = _trial()
        lic.begin_plan_purchase(PLANS["basico"].plan_id, "pay-1", SubscriptionType.MONTHLY, NOW)
        assert lic.commit_pending_plan("pay-other", NOW) is False
        assert lic.plan_id == PLANS["demo"].plan_id

    def test_unlinked_pending_plan_commits(self) -> None:
        lic = _trial()
        lic.pending_plan_id = PLANS["starter"].plan_id
        assert lic.commit_pending_plan("any", NOW) is True
        assert lic.plan_id == PLANS["starter"].plan_id

    def test_change_plan_drops_stale_snapshot(self) -> None:
        lic = _active()
        lic.change_plan(PLANS["profesional"].plan_id, NOW)
        assert lic.plan_snapshot is None


class TestTransitions:
    def test_suspend_and_resume(self) -> None:
        lic = _active()
        lic.suspend(NOW, "payment overdue")
        assert lic.state == LicenseState.SUSPENDED
        assert not lic.is_active(NOW)
        lic.resume(NOW)
        assert lic.state == LicenseState.ACTIVE

    def test_trial_cannot_be_suspended(self) -> None:
        with pytest.raises(InvalidStateError):
            _trial().suspend(NOW)

    def test_resume_requires_suspended(self) -> None:
        with pytest.raises(InvalidStateError):
            _active().resume(NOW)

    def test_cancelled_is_terminal(self) -> None:
        lic = _active()
        lic.cancel(immediate=True, now=NOW)
        assert lic.state == LicenseState.CANCELLED
        assert lic.cancellation_date == NOW
        with pytest.raises(InvalidStateError):
            lic.suspend(NOW)
        with pytest.raises(InvalidStateError):
            lic.change_plan(PLANS["starter"].plan_id, NOW)
        with pytest.raises(InvalidStateError):
            lic.cancel(immediate=True, now=NOW)

    def test_renew_extends_from_current_renewal(self) -> None:
        lic = _active()
        before = lic.renewal_date
        lic.renew(NOW + timedelta(days=5))
        assert before is not None
        assert lic.renewal_date == before + timedelta(days=30)

    def test_renew_after_lapse_starts_from_now(self) -> None:
        lic = _active()
        later = NOW + timedelta(days=40)
        lic.renew(later)
        assert lic.renewal_date == later + timedelta(days=30)

    def test_audit_timestamps_never_go_backwards(self) -> None:
        lic = _active()
        lic.set_auto_renew(False, NOW - timedelta(hours=1))
        stamps = [e.timestamp for e in lic.history]
        assert stamps == sorted(stamps)


class TestDeferredCancellation:
    def test_cancel_at_cycle_end(self) -> None:
        lic = _active()
        lic.cancel(immediate=False, now=NOW)
        assert lic.state == LicenseState.ACTIVE
        assert lic.auto_renew is False

        assert lic.apply_renewal(NOW + timedelta(days=10)) == []
        assert lic.state == LicenseState.ACTIVE

        applied = lic.apply_renewal(NOW + timedelta(days=31))
        assert applied == [AuditAction.CANCELACION]
        assert lic.state == LicenseState.CANCELLED

    def test_scheduled_downgrade_applies_at_renewal(self) -> None:
        lic = _active("profesional")
        lic.schedule_downgrade(PLANS["basico"].plan_id, NOW)
        assert lic.plan_id == PLANS["profesional"].plan_id
        applied = lic.apply_renewal(NOW + timedelta(days=31))
        assert applied == [AuditAction.CAMBIO_PLAN]
        assert lic.plan_id == PLANS["basico"].plan_id
        assert lic.scheduled_plan_id is None

    def test_addon_cancelled_at_renewal(self) -> None:
        lic = _active()
        lic.grant_addons([(ADDONS["crm"], 1)], "pay-2", NOW)
        lic.cancel_addon("crm", immediate=False, now=NOW)
        assert lic.grant_for("crm") is not None
        lic.apply_renewal(NOW + timedelta(days=31))
        assert lic.grant_for("crm") is None


class TestAddOns:
    def test_grant_is_idempotent_per_slug(self) -> None:
        lic = _active()
        assert lic.grant_addons([(ADDONS["crm"], 1)], "pay-2", NOW) == ["crm"]
        assert lic.grant_addons([(ADDONS["crm"], 1)], "pay-2", NOW) == []
        assert len(lic.active_grants()) == 1
        assert _actions(lic).count(AuditAction.ACTIVACION_ADDONS) == 1

    def test_one_off_grant_has_no_recurring_price(self) -> None:
        lic = _active()
        lic.grant_addons([(ADDONS["migracion-datos"], 1)], "pay-2", NOW)
        grant = lic.grant_for("migracion-datos")
        assert grant is not None
        assert grant.monthly_price == Decimal("0")

    def test_pending_addons_replaced_not_merged(self) -> None:
        lic = _active()
        lic.begin_addon_purchase(["crm"], "pay-2", NOW)
        lic.begin_addon_purchase(["firmas"], "pay-3", NOW)
        assert lic.pending_addons_for("pay-3") == {"firmas"}
        assert lic.pending_addons_for("pay-2") == set()

    def test_grant_clears_matching_pending(self) -> None:
        lic = _active()
        lic.begin_addon_purchase(["crm"], "pay-2", NOW)
        lic.grant_addons([(ADDONS["crm"], 1)], "pay-2", NOW)
        assert lic.pending_addon_slugs == set()
        assert lic.pending_addons_payment_id is None

    def test_empty_addon_purchase_rejected(self) -> None:
        with pytest.raises(InvalidStateError):
            _active().begin_addon_purchase([], "pay-2", NOW)

    def test_cancel_inactive_addon_rejected(self) -> None:
        with pytest.raises(InvalidStateError):
            _active().cancel_addon("crm", immediate=True, now=NOW)

    def test_immediate_addon_cancel(self) -> None:
        lic = _active()
        lic.grant_addons([(ADDONS["crm"], 1)], "pay-2", NOW)
        grant = lic.cancel_addon("crm", immediate=True, now=NOW)
        assert grant.active is False
        assert grant.cancelled_at == NOW
        assert lic.active_grants() == []

    def test_quantity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            AddOnGrant(addon_id="a", slug="crm", quantity=0)


class TestSubscriptionRef:
    def test_set_and_clear(self) -> None:
        lic = _active()
        ref = GatewaySubscriptionRef(gateway=Gateway.PAYPAL, external_id="I-123")
        lic.set_subscription_ref(ref)
        assert lic.gateway_subscription_ref == ref
        lic.set_subscription_ref(None)
        assert lic.gateway_subscription_ref is None
