"""Tests for the scheduled licensing jobs."""

from __future__ import annotations

from typing import Any

import pytest

from licensing.core.exceptions import GatewayError
from licensing.core.interfaces import UsageSource
from licensing.core.types import (
    AuditAction,
    Gateway,
    LicenseState,
    Payment,
    PaymentOutcome,
    PaymentState,
    PurchaseInitiation,
    UsageKey,
)
from licensing.jobs.scheduler import LicensingJobs
from licensing.licenses.license import License
from licensing.licenses.service import LicensingService
from licensing.storage.memory import InMemoryStore


class FakeUsage(UsageSource):
    def __init__(self, products: int = 0, users: int = 0, broken: bool = False) -> None:
        self.products = products
        self.users = users
        self.broken = broken

    async def count_active_terminals(self, company_id: str) -> int:
        return 0

    async def count_products(self, company_id: str) -> int:
        if self.broken:
            raise ConnectionError("tenant database unavailable")
        return self.products

    async def count_clients(self, company_id: str) -> int:
        return 0

    async def count_warehouses(self, company_id: str) -> int:
        return 0

    async def count_total_users(self, company_id: str) -> int:
        return self.users


async def _license(store: InMemoryStore, company_id: str = "c1") -> License:
    lic = await store.licenses.get(company_id)
    assert lic is not None
    return lic


async def _pending_plan_payment(service: LicensingService) -> Payment:
    await service.create_trial("c1")
    outcome = await service.purchase_plan("c1", "basico", Gateway.STRIPE)
    initiation = outcome.unwrap()
    assert isinstance(initiation, PurchaseInitiation)
    return initiation.payment


class TestCounters:
    @pytest.mark.asyncio
    async def test_monthly_reset(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore
    ) -> None:
        await service.create_trial("c1")
        await service.create_trial("c2")
        await store.licenses.set_usage("c1", UsageKey.INVOICES_THIS_MONTH, 40)
        await store.licenses.set_usage("c2", UsageKey.EMAILS_THIS_MONTH, 7)
        await store.licenses.set_usage("c1", UsageKey.PRODUCTS, 12)
        await store.licenses.set_usage("c1", UsageKey.API_CALLS_TODAY, 90)

        assert await jobs.reset_monthly_counters() == 2
        c1 = await _license(store)
        assert c1.usage_of(UsageKey.INVOICES_THIS_MONTH) == 0
        assert c1.usage_of(UsageKey.PRODUCTS) == 12
        assert c1.usage_of(UsageKey.API_CALLS_TODAY) == 90
        assert (await _license(store, "c2")).usage_of(UsageKey.EMAILS_THIS_MONTH) == 0

    @pytest.mark.asyncio
    async def test_daily_reset(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore
    ) -> None:
        await service.create_trial("c1")
        await store.licenses.set_usage("c1", UsageKey.API_CALLS_TODAY, 90)
        await store.licenses.set_usage("c1", UsageKey.INVOICES_THIS_MONTH, 40)
        await jobs.reset_daily_counters()
        lic = await _license(store)
        assert lic.usage_of(UsageKey.API_CALLS_TODAY) == 0
        assert lic.usage_of(UsageKey.INVOICES_THIS_MONTH) == 40


class TestReconcileUsage:
    @pytest.mark.asyncio
    async def test_drifted_counters_corrected(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore
    ) -> None:
        await service.create_trial("c1")
        await store.licenses.set_usage("c1", UsageKey.PRODUCTS, 3)
        corrected = await jobs.reconcile_usage(FakeUsage(products=7, users=2))
        assert corrected == 2
        lic = await _license(store)
        assert lic.usage_of(UsageKey.PRODUCTS) == 7
        assert lic.usage_of(UsageKey.TOTAL_USERS) == 2

    @pytest.mark.asyncio
    async def test_source_failure_skips_counter(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore
    ) -> None:
        await service.create_trial("c1")
        await store.licenses.set_usage("c1", UsageKey.PRODUCTS, 3)
        corrected = await jobs.reconcile_usage(FakeUsage(users=4, broken=True), ["c1", "ghost"])
        assert corrected == 1
        lic = await _license(store)
        assert lic.usage_of(UsageKey.PRODUCTS) == 3
        assert lic.usage_of(UsageKey.TOTAL_USERS) == 4


class TestLifecycleJobs:
    @pytest.mark.asyncio
    async def test_expire_overdue_trials(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore, clock: Any
    ) -> None:
        await service.create_trial("c1")
        clock.advance(days=10)
        await service.create_trial("c2")
        clock.advance(days=21)

        assert await jobs.expire_overdue_trials() == 1
        assert (await _license(store, "c1")).state == LicenseState.EXPIRED
        assert (await _license(store, "c2")).state == LicenseState.TRIAL
        assert await jobs.expire_overdue_trials() == 0

    @pytest.mark.asyncio
    async def test_deferred_cancellation_ends_at_renewal(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore, clock: Any
    ) -> None:
        await service.create_trial("c1")
        await service.change_plan("c1", "basico")
        await service.cancel("c1")

        clock.advance(days=29)
        assert await jobs.process_renewals() == 0
        assert (await _license(store)).state == LicenseState.ACTIVE

        clock.advance(days=2)
        assert await jobs.process_renewals() == 1
        lic = await _license(store)
        assert lic.state == LicenseState.CANCELLED
        assert lic.cancellation_date == clock.now

    @pytest.mark.asyncio
    async def test_scheduled_downgrade_applied(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore, clock: Any
    ) -> None:
        await service.create_trial("c1")
        await service.change_plan("c1", "profesional")
        await service.purchase_plan("c1", "basico", Gateway.STRIPE)

        clock.advance(days=31)
        await jobs.process_renewals()
        lic = await _license(store)
        assert lic.plan_id == "plan-basico"
        assert lic.scheduled_plan_id is None
        assert lic.last_event is not None
        assert lic.last_event.action == AuditAction.CAMBIO_PLAN


class TestPaymentSweep:
    @pytest.mark.asyncio
    async def test_recent_payments_skipped(self, jobs: LicensingJobs, service: LicensingService) -> None:
        await _pending_plan_payment(service)
        assert await jobs.sweep_unresolved_payments() == {}

    @pytest.mark.asyncio
    async def test_still_open(self, jobs: LicensingJobs, service: LicensingService, clock: Any) -> None:
        await _pending_plan_payment(service)
        clock.advance(minutes=20)
        assert await jobs.sweep_unresolved_payments() == {"still_open": 1}

    @pytest.mark.asyncio
    async def test_confirmed_at_gateway(
        self,
        jobs: LicensingJobs,
        service: LicensingService,
        store: InMemoryStore,
        gateway: Any,
        clock: Any,
    ) -> None:
        payment = await _pending_plan_payment(service)
        gateway.outcomes[payment.payment_id] = PaymentOutcome.CONFIRMED
        clock.advance(minutes=20)

        assert await jobs.sweep_unresolved_payments() == {"applied": 1}
        lic = await _license(store)
        assert lic.state == LicenseState.ACTIVE
        assert lic.plan_id == "plan-basico"

    @pytest.mark.asyncio
    async def test_abandoned_payment_failed(
        self, jobs: LicensingJobs, service: LicensingService, store: InMemoryStore, clock: Any
    ) -> None:
        payment = await _pending_plan_payment(service)
        clock.advance(hours=49)

        assert await jobs.sweep_unresolved_payments() == {"applied": 1}
        stored = await store.payments.get(payment.payment_id)
        assert stored is not None
        assert stored.state == PaymentState.FAILED
        assert stored.failure_detail == "no gateway confirmation received"
        assert (await _license(store)).state == LicenseState.TRIAL

    @pytest.mark.asyncio
    async def test_lookup_failure_leaves_payment_open(
        self,
        jobs: LicensingJobs,
        service: LicensingService,
        store: InMemoryStore,
        gateway: Any,
        clock: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        payment = await _pending_plan_payment(service)

        async def unreachable(payment: Payment) -> PaymentOutcome | None:
            raise GatewayError("gateway unreachable", retryable=True)

        monkeypatch.setattr(gateway, "fetch_outcome", unreachable)
        clock.advance(hours=49)

        assert await jobs.sweep_unresolved_payments() == {"lookup_failed": 1}
        stored = await store.payments.get(payment.payment_id)
        assert stored is not None
        assert stored.state == PaymentState.PENDING
