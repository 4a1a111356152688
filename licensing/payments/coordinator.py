"""Gateway reconciliation coordinator.

Applies gateway payment and subscription events to the license exactly
once. Every read-modify-write runs under the tenant lock and ends in a
single ``commit_reconciliation`` so the payment and the license are
persisted together or not at all. Repositories hand out detached records,
so an exception before the commit leaves stored state untouched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import TypeVar

from licensing.billing.proration import is_upgrade
from licensing.billing.summary import build_billing_summary, resolve_plan
from licensing.catalog.registry import CatalogService
from licensing.core.constants import RECONCILE_BACKOFF_BASE, RECONCILE_MAX_RETRIES
from licensing.core.exceptions import NotFoundError, ReconciliationConflictError
from licensing.core.interfaces import (
    GatewayAdapter,
    InvoiceGenerator,
    LicensingStore,
    Notifier,
    TenantLocks,
)
from licensing.core.logging import get_logger
from licensing.core.types import (
    OUTCOME_TO_STATE,
    Gateway,
    GatewaySubscriptionRef,
    LicenseState,
    Payment,
    PaymentConcept,
    PaymentEvent,
    PaymentOutcome,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionType,
    utcnow,
)
from licensing.licenses.license import TERMINAL_STATES, License

log = get_logger(__name__)

T = TypeVar("T")


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_PAYMENT = "unknown_payment"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    REJECTED = "rejected"     # bad signature or unknown gateway; answer 4xx
    FAILED = "failed"         # internal error; answer 5xx so the gateway retries


class ReconciliationCoordinator:
    def __init__(
        self,
        store: LicensingStore,
        catalog: CatalogService,
        adapters: Mapping[Gateway, GatewayAdapter],
        locks: TenantLocks,
        invoices: InvoiceGenerator | None = None,
        notifier: Notifier | None = None,
        *,
        max_retries: int = RECONCILE_MAX_RETRIES,
        backoff_base: float = RECONCILE_BACKOFF_BASE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._adapters = dict(adapters)
        self._locks = locks
        self._invoices = invoices
        self._notifier = notifier
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._clock = clock

    # ── Webhook entry point ──────────────────────────────────────

    async def handle_webhook(
        self,
        gateway: Gateway,
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookStatus:
        """Verify, parse and apply one gateway notification.

        Never raises: processing errors are logged and reported as
        ``FAILED`` so the gateway delivers the notification again.
        """
        adapter = self._adapters.get(gateway)
        if adapter is None:
            log.warning("webhook_gateway_not_configured", gateway=gateway.value)
            return WebhookStatus.REJECTED

        if not await adapter.verify_event_signature(raw_payload, headers):
            log.warning("webhook_signature_invalid", gateway=gateway.value)
            return WebhookStatus.REJECTED

        try:
            event = adapter.parse_event(raw_payload)
        except (ValueError, KeyError) as exc:
            log.error("webhook_unparseable", gateway=gateway.value, error=str(exc))
            return WebhookStatus.IGNORED
        if event is None:
            return WebhookStatus.IGNORED

        try:
            if isinstance(event, PaymentEvent):
                result = await self.on_payment_event(event)
            else:
                result = await self.on_subscription_event(event)
        except Exception as exc:
            log.error(
                "webhook_processing_failed",
                gateway=gateway.value,
                error=str(exc),
                error_type=type(exc).__name__,
                context=getattr(exc, "context", {}),
            )
            return WebhookStatus.FAILED

        if result in (ReconcileResult.APPLIED, ReconcileResult.DUPLICATE):
            return WebhookStatus.PROCESSED
        return WebhookStatus.IGNORED

    # ── Payment events ───────────────────────────────────────────

    async def on_payment_event(self, event: PaymentEvent) -> ReconcileResult:
        """Apply a verified payment event. Safe to call repeatedly."""
        payment = await self._find_payment(event)
        if payment is None:
            log.error(
                "payment_not_found",
                gateway=event.gateway.value,
                external_id=event.external_transaction_id,
                reference=event.payment_reference,
                outcome=event.outcome.value,
            )
            return ReconcileResult.UNKNOWN_PAYMENT
        return await self.apply_outcome(
            payment,
            event.outcome,
            detail=event.detail,
            external_id=event.external_transaction_id,
        )

    async def apply_outcome(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        detail: str = "",
        external_id: str = "",
    ) -> ReconcileResult:
        """Apply ``outcome`` to a known payment (webhooks and the sweep)."""
        result, license, committed = await self._with_retries(
            "payment",
            payment.company_id,
            lambda: self._apply_once(payment.payment_id, payment.company_id, outcome, detail, external_id),
        )
        if (
            result == ReconcileResult.APPLIED
            and outcome == PaymentOutcome.CONFIRMED
            and license is not None
            and committed is not None
        ):
            await self._after_confirmation(license, committed)
        return result

    async def _find_payment(self, event: PaymentEvent) -> Payment | None:
        payments = self._store.payments
        if event.external_transaction_id:
            payment = await payments.find_by_external(event.gateway, event.external_transaction_id)
            if payment is not None:
                return payment
        if event.payment_reference:
            # Initiation may have timed out before the external id was stored.
            payment = await payments.get(event.payment_reference)
            if payment is not None and payment.gateway == event.gateway and (
                not payment.external_transaction_id
                or payment.external_transaction_id == event.external_transaction_id
            ):
                return payment
        return None

    async def _apply_once(
        self,
        payment_id: str,
        company_id: str,
        outcome: PaymentOutcome,
        detail: str,
        external_id: str,
    ) -> tuple[ReconcileResult, License | None, Payment | None]:
        async with self._locks.hold(company_id):
            payment = await self._store.payments.get(payment_id)
            if payment is None:
                raise NotFoundError("payment not found", context={"payment_id": payment_id})

            target = OUTCOME_TO_STATE[outcome]
            if payment.state == target:
                log.info(
                    "payment_event_duplicate",
                    company_id=company_id,
                    payment_id=payment_id,
                    state=payment.state.value,
                )
                return ReconcileResult.DUPLICATE, None, None
            if not payment.can_transition(target):
                log.warning(
                    "payment_event_ignored",
                    company_id=company_id,
                    payment_id=payment_id,
                    state=payment.state.value,
                    outcome=outcome.value,
                )
                return ReconcileResult.IGNORED, None, None

            license = await self._store.licenses.get(company_id)
            if license is None:
                raise NotFoundError("license not found", context={"company_id": company_id})

            now = self._clock()
            if external_id and not payment.external_transaction_id:
                payment.external_transaction_id = external_id
            payment.transition(
                target, now, detail=detail if outcome == PaymentOutcome.FAILED else ""
            )

            if outcome == PaymentOutcome.CONFIRMED:
                await self._apply_confirmation(license, payment, now)
            elif outcome == PaymentOutcome.FAILED:
                license.record_payment_failure(payment_id, now, detail)
            else:
                license.record_refund(payment_id, now)

            await self._store.commit_reconciliation(license, payment)
            log.info(
                "payment_reconciled",
                company_id=company_id,
                payment_id=payment_id,
                gateway=payment.gateway.value,
                outcome=outcome.value,
                license_state=license.state.value,
            )
            return ReconcileResult.APPLIED, license, payment

    async def _apply_confirmation(self, license: License, payment: Payment, now: datetime) -> None:
        """Commit whatever this payment funded, then start or extend the subscription."""
        license.refresh(now)
        plan_committed = await self._commit_funded_plan(license, payment, now)

        # A replaced purchase is no longer linked from the license; its own
        # metadata still records what it paid for.
        quantities = payment.metadata.get("addon_quantities") or {}
        slugs = license.pending_addons_for(payment.payment_id) | set(quantities)
        granted: list[str] = []
        if slugs:
            catalog = await self._catalog.addons_by_slug()
            to_grant = []
            for slug in sorted(slugs):
                addon = catalog.get(slug)
                if addon is None:
                    log.error(
                        "paid_addon_not_in_catalog",
                        company_id=license.company_id,
                        payment_id=payment.payment_id,
                        slug=slug,
                    )
                    continue
                to_grant.append((addon, int(quantities.get(slug, 1))))
            granted = license.grant_addons(to_grant, payment.payment_id, now)

        renewal = payment.concept == PaymentConcept.SUBSCRIPTION and "plan_slug" not in payment.metadata
        if license.is_trial or license.state in TERMINAL_STATES:
            if plan_committed or granted or renewal:
                license.activate_subscription(now, payment.payment_id)
            else:
                log.warning(
                    "confirmed_payment_funded_nothing",
                    company_id=license.company_id,
                    payment_id=payment.payment_id,
                    license_state=license.state.value,
                )
        elif renewal or (plan_committed and payment.concept == PaymentConcept.SUBSCRIPTION):
            license.renew(now, payment.payment_id)

        subscription_id = payment.metadata.get("gateway_subscription_id")
        if subscription_id:
            license.set_subscription_ref(
                GatewaySubscriptionRef(gateway=payment.gateway, external_id=subscription_id)
            )

    async def _commit_funded_plan(self, license: License, payment: Payment, now: datetime) -> bool:
        """Commit the plan this payment bought. Returns True if one was applied.

        A superseded plan payment that confirms late is applied only when it
        starts a new subscription or is still an upgrade over the current
        plan; otherwise it is logged for manual reconciliation.
        """
        if license.commit_pending_plan(payment.payment_id, now):
            return True
        slug = payment.metadata.get("plan_slug")
        if not slug:
            return False
        plan = await self._catalog.get_plan_by_slug(slug)
        if plan is None:
            log.error(
                "paid_plan_not_in_catalog",
                company_id=license.company_id,
                payment_id=payment.payment_id,
                slug=slug,
            )
            return False

        new_subscription = license.is_trial or license.state in TERMINAL_STATES
        if not new_subscription:
            current = await resolve_plan(license, self._catalog)
            if plan.plan_id == current.plan_id or not is_upgrade(current, plan, license.subscription_type):
                log.warning(
                    "superseded_plan_payment_not_applied",
                    company_id=license.company_id,
                    payment_id=payment.payment_id,
                    paid_plan=plan.plan_id,
                    current_plan=current.plan_id,
                    amount=str(payment.amount),
                )
                return False

        cycle = None
        if new_subscription and payment.metadata.get("subscription_type"):
            cycle = SubscriptionType(payment.metadata["subscription_type"])
        license.commit_plan(plan.plan_id, cycle, payment.payment_id, now)
        log.info(
            "superseded_plan_payment_applied",
            company_id=license.company_id,
            payment_id=payment.payment_id,
            plan_id=plan.plan_id,
        )
        return True

    async def _after_confirmation(self, license: License, payment: Payment) -> None:
        """Invoice and notify. Failures here never undo the committed payment."""
        company_id = payment.company_id
        invoice_ref = None
        if self._invoices is not None:
            try:
                invoice_ref = await self._invoices.generate_invoice(payment.payment_id)
            except Exception as exc:
                log.error(
                    "invoice_generation_failed",
                    company_id=company_id,
                    payment_id=payment.payment_id,
                    error=str(exc),
                )

        if self._notifier is None:
            return
        if invoice_ref is not None:
            try:
                await self._notifier.send_invoice_email(invoice_ref)
            except Exception as exc:
                log.error(
                    "invoice_email_failed",
                    company_id=company_id,
                    invoice=invoice_ref.number,
                    error=str(exc),
                )
        try:
            summary = await build_billing_summary(license, self._catalog, payment.currency)
            await self._notifier.send_payment_confirmation(company_id, summary)
        except Exception as exc:
            log.error(
                "payment_confirmation_failed",
                company_id=company_id,
                payment_id=payment.payment_id,
                error=str(exc),
            )

    # ── Subscription events ──────────────────────────────────────

    async def on_subscription_event(self, event: SubscriptionEvent) -> ReconcileResult:
        owner = await self._store.licenses.find_by_subscription(
            event.gateway, event.external_subscription_id
        )
        if owner is None:
            log.warning(
                "subscription_not_found",
                gateway=event.gateway.value,
                subscription_id=event.external_subscription_id,
                status=event.status.value,
            )
            return ReconcileResult.UNKNOWN_SUBSCRIPTION
        return await self._with_retries(
            "subscription",
            owner.company_id,
            lambda: self._apply_subscription_once(owner.company_id, event),
        )

    async def _apply_subscription_once(
        self, company_id: str, event: SubscriptionEvent
    ) -> ReconcileResult:
        async with self._locks.hold(company_id):
            license = await self._store.licenses.get(company_id)
            if license is None:
                raise NotFoundError("license not found", context={"company_id": company_id})
            now = self._clock()
            license.refresh(now)
            reason = f"{event.gateway.value} subscription {event.external_subscription_id}"
            state = license.state

            if event.status == SubscriptionStatus.ACTIVATED:
                if state == LicenseState.ACTIVE:
                    return ReconcileResult.DUPLICATE
                if state != LicenseState.SUSPENDED:
                    return self._subscription_ignored(license, event)
                license.resume(now, reason)
            elif event.status == SubscriptionStatus.SUSPENDED:
                if state == LicenseState.SUSPENDED:
                    return ReconcileResult.DUPLICATE
                if state != LicenseState.ACTIVE:
                    return self._subscription_ignored(license, event)
                license.suspend(now, reason)
            elif event.status == SubscriptionStatus.CANCELLED:
                if state == LicenseState.CANCELLED:
                    return ReconcileResult.DUPLICATE
                if state in TERMINAL_STATES:
                    return self._subscription_ignored(license, event)
                license.cancel(immediate=True, now=now, reason=reason)
            else:
                license.record_payment_failure(None, now, reason)

            await self._store.licenses.save(license)
            log.info(
                "subscription_event_applied",
                company_id=company_id,
                gateway=event.gateway.value,
                status=event.status.value,
                license_state=license.state.value,
            )
            return ReconcileResult.APPLIED

    @staticmethod
    def _subscription_ignored(license: License, event: SubscriptionEvent) -> ReconcileResult:
        log.warning(
            "subscription_event_ignored",
            company_id=license.company_id,
            status=event.status.value,
            license_state=license.state.value,
        )
        return ReconcileResult.IGNORED

    # ── Retry ────────────────────────────────────────────────────

    async def _with_retries(
        self,
        kind: str,
        company_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Re-run the whole read-modify-write when the license version moved."""
        last_error: ReconciliationConflictError | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return await operation()
            except ReconciliationConflictError as exc:
                last_error = exc
                log.warning(
                    "reconcile_conflict",
                    kind=kind,
                    company_id=company_id,
                    attempt=attempt,
                )
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff_base * 2 ** (attempt - 1))

        log.error(
            "reconcile_retries_exhausted",
            kind=kind,
            company_id=company_id,
            attempts=self._max_retries,
        )
        assert last_error is not None
        raise last_error
