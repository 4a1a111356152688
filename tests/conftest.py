"""Pytest configuration, compatibility helpers and shared licensing fixtures.

This project includes async tests marked with ``@pytest.mark.asyncio``.
Some environments run unit tests without ``pytest-asyncio`` installed, which
would otherwise make those tests fail at collection/runtime.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from licensing.billing.invoicing import InvoiceService
from licensing.billing.notifications import LoggingNotifier
from licensing.catalog.registry import CatalogService
from licensing.catalog.seed import DEFAULT_ADDONS, DEFAULT_PLANS
from licensing.core.interfaces import CompanyDirectory
from licensing.core.locks import LocalTenantLocks
from licensing.core.types import (
    Company,
    Gateway,
    Payment,
    PaymentEvent,
    PaymentOutcome,
    SubscriptionEvent,
    SubscriptionStatus,
)
from licensing.gateways.base import BaseGatewayAdapter, RemoteStart
from licensing.jobs.scheduler import LicensingJobs
from licensing.licenses.service import LicensingService
from licensing.payments.coordinator import ReconciliationCoordinator
from licensing.storage.memory import InMemoryStore


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins.

    If pytest-asyncio (or another async plugin) is installed, this hook may be
    bypassed by that plugin depending on hook ordering. In plugin-less
    environments, this fallback executes coroutine tests via ``asyncio.run``.
    """
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        # Keep a default loop available for sync tests that call
        # ``asyncio.get_event_loop()`` directly.
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


# ── Shared licensing fixtures ────────────────────────────────────

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(BaseGatewayAdapter):
    """Gateway double: JSON events, header signature, scripted outcomes."""

    gateway = Gateway.STRIPE

    def __init__(self, payments: Any, clock: FrozenClock, timeout_seconds: float = 1.0) -> None:
        super().__init__(payments, http=httpx.AsyncClient(), timeout_seconds=timeout_seconds, clock=clock)
        self.outcomes: dict[str, PaymentOutcome] = {}
        self.calls: list[tuple[str, str, bool | None]] = []
        self.fail_with: Exception | None = None
        self.delay = 0.0
        self._seq = 0

    async def _start_remote(self, payment: Payment) -> RemoteStart:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self._seq += 1
        return RemoteStart(external_id=f"ext-{self._seq}", client_token=f"secret-{self._seq}")

    async def verify_event_signature(self, raw_payload: bytes, headers: Any) -> bool:
        return headers.get("X-Signature") == "valid"

    def parse_event(self, raw_payload: bytes) -> PaymentEvent | SubscriptionEvent | None:
        body = json.loads(raw_payload)
        if "subscription" in body:
            return SubscriptionEvent(
                gateway=self.gateway,
                external_subscription_id=body["subscription"],
                status=SubscriptionStatus(body["status"]),
                raw_payload=body,
            )
        if "outcome" not in body:
            return None
        return PaymentEvent(
            gateway=self.gateway,
            external_transaction_id=body["id"],
            outcome=PaymentOutcome(body["outcome"]),
            raw_payload=body,
            payment_reference=body.get("ref"),
            detail=body.get("detail", ""),
        )

    async def toggle_auto_renew(self, subscription_id: str, enable: bool) -> None:
        self.calls.append(("toggle_auto_renew", subscription_id, enable))

    async def cancel_subscription(self, subscription_id: str) -> None:
        self.calls.append(("cancel_subscription", subscription_id, None))

    async def fetch_outcome(self, payment: Payment) -> PaymentOutcome | None:
        return self.outcomes.get(payment.payment_id)


class FakeDirectory(CompanyDirectory):
    async def get_company(self, company_id: str) -> Company | None:
        if company_id.startswith("missing"):
            return None
        return Company(
            company_id=company_id,
            name=f"Company {company_id}",
            tax_id="B12345678",
            billing_address="Calle Mayor 1, Madrid",
            email=f"billing@{company_id}.example",
        )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(DEFAULT_PLANS, DEFAULT_ADDONS)


@pytest.fixture
def catalog(store: InMemoryStore) -> CatalogService:
    return CatalogService(store.catalog)


@pytest.fixture
def locks() -> LocalTenantLocks:
    return LocalTenantLocks()


@pytest.fixture
def gateway(store: InMemoryStore, clock: FrozenClock) -> FakeGateway:
    return FakeGateway(store.payments, clock)


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def invoices(store: InMemoryStore, clock: FrozenClock) -> InvoiceService:
    return InvoiceService(store, FakeDirectory(), clock=clock)


@pytest.fixture
def coordinator(
    store: InMemoryStore,
    catalog: CatalogService,
    gateway: FakeGateway,
    locks: LocalTenantLocks,
    invoices: InvoiceService,
    notifier: LoggingNotifier,
    clock: FrozenClock,
) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(
        store,
        catalog,
        {Gateway.STRIPE: gateway},
        locks,
        invoices=invoices,
        notifier=notifier,
        backoff_base=0.0,
        clock=clock,
    )


@pytest.fixture
def service(
    store: InMemoryStore,
    catalog: CatalogService,
    gateway: FakeGateway,
    locks: LocalTenantLocks,
    clock: FrozenClock,
) -> LicensingService:
    return LicensingService(store, catalog, {Gateway.STRIPE: gateway}, locks, clock=clock)


@pytest.fixture
def jobs(
    store: InMemoryStore,
    locks: LocalTenantLocks,
    coordinator: ReconciliationCoordinator,
    gateway: FakeGateway,
    clock: FrozenClock,
) -> LicensingJobs:
    return LicensingJobs(store, locks, coordinator, {Gateway.STRIPE: gateway}, clock=clock)
