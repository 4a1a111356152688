"""Card processor adapter (Stripe REST API)."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import httpx

from licensing.core.constants import GATEWAY_TIMEOUT_SECONDS, STRIPE_SIGNATURE_TOLERANCE
from licensing.core.interfaces import PaymentRepository
from licensing.core.logging import get_logger
from licensing.core.types import (
    Gateway,
    Payment,
    PaymentEvent,
    PaymentOutcome,
    SubscriptionEvent,
    SubscriptionStatus,
    utcnow,
)
from licensing.gateways.base import BaseGatewayAdapter, RemoteStart, header, to_minor_units

log = get_logger(__name__)

_SUBSCRIPTION_STATUS: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVATED,
    "trialing": SubscriptionStatus.ACTIVATED,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "canceled": SubscriptionStatus.CANCELLED,
}


class StripeAdapter(BaseGatewayAdapter):
    gateway = Gateway.STRIPE

    def __init__(
        self,
        payments: PaymentRepository,
        secret_key: str,
        webhook_secret: str,
        api_base: str = "https://api.stripe.com",
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        signature_tolerance: int = STRIPE_SIGNATURE_TOLERANCE,
    ) -> None:
        super().__init__(payments, http=http, timeout_seconds=timeout_seconds, clock=clock)
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._api_base = api_base.rstrip("/")
        self._tolerance = signature_tolerance

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    # ── Purchases ────────────────────────────────────────────────

    async def _start_remote(self, payment: Payment) -> RemoteStart:
        data = {
            "amount": str(to_minor_units(payment.amount)),
            "currency": payment.currency.lower(),
            "description": payment.description or payment.concept.value,
            "automatic_payment_methods[enabled]": "true",
            "metadata[payment_id]": payment.payment_id,
            "metadata[company_id]": payment.company_id,
            "metadata[concept]": payment.concept.value,
        }
        response = await self._request(
            "POST",
            f"{self._api_base}/v1/payment_intents",
            data=data,
            headers=self._headers(idempotency_key=payment.payment_id),
        )
        intent = response.json()
        log.info(
            "stripe_intent_created",
            payment_id=payment.payment_id,
            intent_id=intent.get("id"),
            status=intent.get("status"),
        )
        return RemoteStart(
            external_id=intent["id"],
            client_token=intent.get("client_secret", ""),
        )

    # ── Webhooks ─────────────────────────────────────────────────

    async def verify_event_signature(
        self, raw_payload: bytes, headers: Mapping[str, str]
    ) -> bool:
        signature_header = header(headers, "Stripe-Signature")
        if not signature_header or not self._webhook_secret:
            return False

        timestamp = ""
        signatures: list[str] = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp.isdigit() or not signatures:
            return False

        if abs(self._clock().timestamp() - int(timestamp)) > self._tolerance:
            log.warning("stripe_signature_expired", timestamp=timestamp)
            return False

        signed = f"{timestamp}.".encode() + raw_payload
        expected = hmac.new(self._webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, sig) for sig in signatures)

    def parse_event(self, raw_payload: bytes) -> PaymentEvent | SubscriptionEvent | None:
        event = json.loads(raw_payload)
        event_type = event.get("type", "")
        obj: dict[str, Any] = event.get("data", {}).get("object", {})
        reference = (obj.get("metadata") or {}).get("payment_id")

        if event_type == "payment_intent.succeeded":
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=obj["id"],
                outcome=PaymentOutcome.CONFIRMED,
                raw_payload=event,
                payment_reference=reference,
            )
        if event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
            error = obj.get("last_payment_error") or {}
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=obj["id"],
                outcome=PaymentOutcome.FAILED,
                raw_payload=event,
                payment_reference=reference,
                detail=error.get("message", "") or obj.get("cancellation_reason") or "",
            )
        if event_type == "charge.refunded":
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=obj.get("payment_intent") or obj["id"],
                outcome=PaymentOutcome.REFUNDED,
                raw_payload=event,
                payment_reference=reference,
            )
        if event_type == "customer.subscription.deleted":
            return SubscriptionEvent(
                gateway=self.gateway,
                external_subscription_id=obj["id"],
                status=SubscriptionStatus.CANCELLED,
                raw_payload=event,
            )
        if event_type == "customer.subscription.updated":
            status = _SUBSCRIPTION_STATUS.get(obj.get("status", ""))
            if status is None:
                return None
            return SubscriptionEvent(
                gateway=self.gateway,
                external_subscription_id=obj["id"],
                status=status,
                raw_payload=event,
            )
        if event_type == "invoice.payment_failed" and obj.get("subscription"):
            return SubscriptionEvent(
                gateway=self.gateway,
                external_subscription_id=obj["subscription"],
                status=SubscriptionStatus.PAYMENT_FAILED,
                raw_payload=event,
            )

        log.debug("stripe_event_ignored", event_type=event_type)
        return None

    # ── Subscriptions ────────────────────────────────────────────

    async def toggle_auto_renew(self, subscription_id: str, enable: bool) -> None:
        await self._request(
            "POST",
            f"{self._api_base}/v1/subscriptions/{subscription_id}",
            data={"cancel_at_period_end": "false" if enable else "true"},
            headers=self._headers(),
        )
        log.info("stripe_auto_renew_set", subscription_id=subscription_id, enabled=enable)

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self._api_base}/v1/subscriptions/{subscription_id}",
            headers=self._headers(),
        )
        log.info("stripe_subscription_cancelled", subscription_id=subscription_id)

    # ── Sweep ────────────────────────────────────────────────────

    async def fetch_outcome(self, payment: Payment) -> PaymentOutcome | None:
        if payment.external_transaction_id:
            response = await self._request(
                "GET",
                f"{self._api_base}/v1/payment_intents/{payment.external_transaction_id}",
                headers=self._headers(),
            )
            intent = response.json()
        else:
            # Initiation timed out before the intent id was recorded.
            response = await self._request(
                "GET",
                f"{self._api_base}/v1/payment_intents/search",
                params={"query": f"metadata['payment_id']:'{payment.payment_id}'"},
                headers=self._headers(),
            )
            found = response.json().get("data", [])
            if not found:
                return None
            intent = found[0]

        status = intent.get("status")
        if status == "succeeded":
            return PaymentOutcome.CONFIRMED
        if status == "canceled":
            return PaymentOutcome.FAILED
        if status == "requires_payment_method" and intent.get("last_payment_error"):
            return PaymentOutcome.FAILED
        return None
