"""Composition root: wires settings, storage, gateways and services together."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx

from config.settings import Settings, get_settings
from licensing.billing.invoicing import InvoiceService
from licensing.billing.notifications import LoggingNotifier
from licensing.catalog.registry import CatalogService
from licensing.core.interfaces import (
    CompanyDirectory,
    GatewayAdapter,
    LicensingStore,
    Notifier,
    TenantLocks,
)
from licensing.core.locks import build_tenant_locks
from licensing.core.logging import get_logger
from licensing.core.types import Gateway
from licensing.gateways.registry import build_adapters
from licensing.jobs.scheduler import LicensingJobs
from licensing.licenses.service import LicensingService
from licensing.payments.coordinator import ReconciliationCoordinator
from licensing.storage.db import get_engine
from licensing.storage.sql import SqlStore

log = get_logger(__name__)


@dataclass
class LicensingEngine:
    store: LicensingStore
    catalog: CatalogService
    adapters: dict[Gateway, GatewayAdapter]
    locks: TenantLocks
    service: LicensingService
    coordinator: ReconciliationCoordinator
    jobs: LicensingJobs
    http: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.http.aclose()
        close = getattr(self.locks, "close", None)
        if close is not None:
            await close()


async def build_engine(
    settings: Settings | None = None,
    store: LicensingStore | None = None,
    locks: TenantLocks | None = None,
    directory: CompanyDirectory | None = None,
    notifier: Notifier | None = None,
    http: httpx.AsyncClient | None = None,
) -> LicensingEngine:
    """Build every component from settings.

    Without a ``store`` the PostgreSQL store is used. Invoices are generated
    only when a company ``directory`` is supplied.
    """
    settings = settings or get_settings()
    store = store or SqlStore(await get_engine())
    locks = locks or build_tenant_locks()
    http = http or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)

    catalog = CatalogService(store.catalog, ttl_seconds=settings.catalog_cache_ttl_seconds)
    adapters = build_adapters(store.payments, settings, http)
    invoices = None
    if directory is not None:
        invoices = InvoiceService(
            store,
            directory,
            series=settings.invoice_series,
            credit_series=settings.credit_note_series,
            iva_rate=settings.iva_rate,
        )

    service = LicensingService(
        store,
        catalog,
        adapters,
        locks,
        trial_days=settings.trial_days,
        trial_plan_slug=settings.trial_plan_slug,
        iva_rate=settings.iva_rate,
        currency=settings.currency,
        warning_threshold=settings.usage_warning_threshold,
    )
    coordinator = ReconciliationCoordinator(
        store,
        catalog,
        adapters,
        locks,
        invoices=invoices,
        notifier=notifier or LoggingNotifier(),
        max_retries=settings.reconcile_max_retries,
        backoff_base=settings.reconcile_backoff_seconds,
    )
    jobs = LicensingJobs(
        store,
        locks,
        coordinator,
        adapters,
        sweep_min_age=timedelta(minutes=settings.payment_sweep_min_age_minutes),
        sweep_max_age=timedelta(hours=settings.payment_sweep_max_age_hours),
    )
    log.info("licensing_engine_ready", env=settings.licensing_env, gateways=len(adapters))
    return LicensingEngine(
        store=store,
        catalog=catalog,
        adapters=adapters,
        locks=locks,
        service=service,
        coordinator=coordinator,
        jobs=jobs,
        http=http,
    )
