"""Scheduled licensing jobs, triggered externally (cron or ``scripts/run_job.py``).

Each job walks every tenant independently: a failure on one tenant is
logged and the job moves on to the next.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta

from licensing.core.constants import PAYMENT_SWEEP_MAX_AGE_HOURS
from licensing.core.exceptions import GatewayError, LicensingError
from licensing.core.interfaces import GatewayAdapter, LicensingStore, TenantLocks, UsageSource
from licensing.core.logging import get_logger
from licensing.core.types import Gateway, PaymentOutcome, ResetPeriod, UsageKey, utcnow
from licensing.payments.coordinator import ReconciliationCoordinator

log = get_logger(__name__)


class LicensingJobs:
    def __init__(
        self,
        store: LicensingStore,
        locks: TenantLocks,
        coordinator: ReconciliationCoordinator,
        adapters: Mapping[Gateway, GatewayAdapter],
        *,
        sweep_min_age: timedelta = timedelta(minutes=15),
        sweep_max_age: timedelta = timedelta(hours=PAYMENT_SWEEP_MAX_AGE_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._locks = locks
        self._coordinator = coordinator
        self._adapters = dict(adapters)
        self._sweep_min_age = sweep_min_age
        self._sweep_max_age = sweep_max_age
        self._clock = clock

    # ── Counters ─────────────────────────────────────────────────

    async def reset_monthly_counters(self) -> int:
        return await self._reset(ResetPeriod.MONTHLY)

    async def reset_daily_counters(self) -> int:
        return await self._reset(ResetPeriod.DAILY)

    async def _reset(self, period: ResetPeriod) -> int:
        keys = [k for k in UsageKey if k.reset_period == period]
        touched = await self._store.licenses.reset_usage(keys)
        log.info(
            "usage_counters_reset",
            period=period.value,
            keys=[k.value for k in keys],
            tenants=touched,
        )
        return touched

    async def reconcile_usage(
        self,
        source: UsageSource,
        company_ids: Iterable[str] | None = None,
    ) -> int:
        """Overwrite cached counters that drifted from the tenant's own data."""
        ids = list(company_ids) if company_ids is not None else await self._store.licenses.list_company_ids()
        corrected = 0
        for company_id in ids:
            license = await self._store.licenses.get(company_id)
            if license is None:
                continue
            for key in UsageKey:
                try:
                    actual = await source.count_active_resources(company_id, key)
                except Exception as exc:
                    log.error(
                        "usage_source_failed",
                        company_id=company_id,
                        key=key.value,
                        error=str(exc),
                    )
                    continue
                if actual is None or actual == license.usage_of(key):
                    continue
                await self._store.licenses.set_usage(company_id, key, actual)
                corrected += 1
                log.info(
                    "usage_counter_corrected",
                    company_id=company_id,
                    key=key.value,
                    cached=license.usage_of(key),
                    actual=actual,
                )
        log.info("usage_reconciled", tenants=len(ids), corrected=corrected)
        return corrected

    # ── License lifecycle ────────────────────────────────────────

    async def expire_overdue_trials(self) -> int:
        expired = 0
        for company_id in await self._store.licenses.list_company_ids():
            try:
                async with self._locks.hold(company_id):
                    license = await self._store.licenses.get(company_id)
                    if license is None or not license.refresh(self._clock()):
                        continue
                    await self._store.licenses.save(license)
                expired += 1
                log.info("trial_expired", company_id=company_id)
            except LicensingError as exc:
                log.error("trial_expiry_failed", company_id=company_id, error=str(exc))
        log.info("expire_trials_completed", expired=expired)
        return expired

    async def process_renewals(self) -> int:
        """Apply changes deferred to the end of the cycle.

        Deferred cancellations become final, scheduled downgrades take
        effect and add-ons cancelled at renewal are dropped.
        """
        changed = 0
        for company_id in await self._store.licenses.list_company_ids():
            try:
                async with self._locks.hold(company_id):
                    license = await self._store.licenses.get(company_id)
                    if license is None:
                        continue
                    now = self._clock()
                    refreshed = license.refresh(now)
                    applied = license.apply_renewal(now)
                    if not applied and not refreshed:
                        continue
                    await self._store.licenses.save(license)
                changed += 1
                log.info(
                    "renewal_processed",
                    company_id=company_id,
                    applied=[a.value for a in applied],
                    state=license.state.value,
                )
            except LicensingError as exc:
                log.error("renewal_failed", company_id=company_id, error=str(exc))
        log.info("renewals_completed", changed=changed)
        return changed

    # ── Payments ─────────────────────────────────────────────────

    async def sweep_unresolved_payments(self) -> dict[str, int]:
        """Resolve payments that never got a webhook.

        Each open payment older than ``sweep_min_age`` is looked up at its
        gateway. Payments still unresolved after ``sweep_max_age`` are
        failed so the tenant can retry.
        """
        now = self._clock()
        payments = await self._store.payments.list_unresolved(now - self._sweep_min_age)
        results: Counter[str] = Counter()

        for payment in payments:
            adapter = self._adapters.get(payment.gateway)
            outcome: PaymentOutcome | None = None
            if adapter is not None:
                try:
                    outcome = await adapter.fetch_outcome(payment)
                except GatewayError as exc:
                    log.warning(
                        "sweep_lookup_failed",
                        payment_id=payment.payment_id,
                        gateway=payment.gateway.value,
                        error=str(exc),
                    )
                    results["lookup_failed"] += 1
                    continue

            detail = "resolved by payment sweep"
            if outcome is None:
                if now - payment.created_at < self._sweep_max_age:
                    results["still_open"] += 1
                    continue
                outcome = PaymentOutcome.FAILED
                detail = "no gateway confirmation received"

            try:
                result = await self._coordinator.apply_outcome(payment, outcome, detail=detail)
            except LicensingError as exc:
                log.error(
                    "sweep_apply_failed",
                    company_id=payment.company_id,
                    payment_id=payment.payment_id,
                    error=str(exc),
                )
                results["failed"] += 1
                continue
            results[result.value] += 1

        log.info("payment_sweep_completed", checked=len(payments), **results)
        return dict(results)
