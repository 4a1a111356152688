"""Wallet gateway adapter (PayPal Orders v2 and Billing Subscriptions)."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import httpx

from licensing.core.constants import GATEWAY_TIMEOUT_SECONDS
from licensing.core.exceptions import GatewayError
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
from licensing.gateways.base import BaseGatewayAdapter, RemoteStart, header

log = get_logger(__name__)

_CAPTURE_OUTCOMES: dict[str, PaymentOutcome] = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentOutcome.CONFIRMED,
    "PAYMENT.CAPTURE.DENIED": PaymentOutcome.FAILED,
    "PAYMENT.CAPTURE.DECLINED": PaymentOutcome.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentOutcome.REFUNDED,
}

_SUBSCRIPTION_EVENTS: dict[str, SubscriptionStatus] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": SubscriptionStatus.ACTIVATED,
    "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.SUSPENDED,
    "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": SubscriptionStatus.CANCELLED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": SubscriptionStatus.PAYMENT_FAILED,
}

_VERIFICATION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}


class PayPalAdapter(BaseGatewayAdapter):
    gateway = Gateway.PAYPAL

    def __init__(
        self,
        payments: PaymentRepository,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        api_base: str = "https://api-m.sandbox.paypal.com",
        return_url: str = "",
        cancel_url: str = "",
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(payments, http=http, timeout_seconds=timeout_seconds, clock=clock)
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self._api_base = api_base.rstrip("/")
        self._return_url = return_url
        self._cancel_url = cancel_url
        self._token: str | None = None
        self._token_expires: datetime | None = None

    # ── Auth ─────────────────────────────────────────────────────

    async def _access_token(self) -> str:
        now = self._clock()
        if self._token and self._token_expires and now < self._token_expires:
            return self._token
        response = await self._request(
            "POST",
            f"{self._api_base}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )
        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early.
        self._token_expires = now + timedelta(seconds=max(int(body.get("expires_in", 0)) - 60, 0))
        return self._token

    async def _authed(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        return await self._request(method, f"{self._api_base}{path}", headers=headers, **kwargs)

    # ── Purchases ────────────────────────────────────────────────

    async def _start_remote(self, payment: Payment) -> RemoteStart:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": payment.payment_id,
                    "custom_id": payment.payment_id,
                    "description": (payment.description or payment.concept.value)[:127],
                    "amount": {
                        "currency_code": payment.currency.upper(),
                        "value": f"{payment.amount:.2f}",
                    },
                }
            ],
            "application_context": {
                "return_url": self._return_url,
                "cancel_url": self._cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        response = await self._authed(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": payment.payment_id},
        )
        order = response.json()
        approve = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            "",
        )
        if not approve:
            raise GatewayError(
                "PayPal order has no approval link",
                context={"payment_id": payment.payment_id, "order_id": order.get("id")},
            )
        log.info("paypal_order_created", payment_id=payment.payment_id, order_id=order["id"])
        return RemoteStart(external_id=order["id"], redirect_url=approve)

    # ── Webhooks ─────────────────────────────────────────────────

    async def verify_event_signature(
        self, raw_payload: bytes, headers: Mapping[str, str]
    ) -> bool:
        if not self._webhook_id:
            return False
        fields = {name: header(headers, key) for name, key in _VERIFICATION_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            event = json.loads(raw_payload)
        except ValueError:
            return False

        try:
            response = await self._authed(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={**fields, "webhook_id": self._webhook_id, "webhook_event": event},
            )
        except GatewayError as exc:
            log.warning("paypal_verification_unavailable", error=str(exc))
            return False
        return response.json().get("verification_status") == "SUCCESS"

    def parse_event(self, raw_payload: bytes) -> PaymentEvent | SubscriptionEvent | None:
        event = json.loads(raw_payload)
        event_type = event.get("event_type", "")
        resource: dict[str, Any] = event.get("resource", {})

        outcome = _CAPTURE_OUTCOMES.get(event_type)
        if outcome is not None:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            order_id = related.get("order_id") or resource.get("id", "")
            detail = ""
            if outcome is PaymentOutcome.FAILED:
                detail = (resource.get("status_details") or {}).get("reason", "")
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=order_id,
                outcome=outcome,
                raw_payload=event,
                payment_reference=resource.get("custom_id") or None,
                detail=detail,
            )

        status = _SUBSCRIPTION_EVENTS.get(event_type)
        if status is not None:
            subscription_id = resource.get("billing_agreement_id") or resource.get("id", "")
            return SubscriptionEvent(
                gateway=self.gateway,
                external_subscription_id=subscription_id,
                status=status,
                raw_payload=event,
            )

        log.debug("paypal_event_ignored", event_type=event_type)
        return None

    # ── Subscriptions ────────────────────────────────────────────

    async def toggle_auto_renew(self, subscription_id: str, enable: bool) -> None:
        action = "activate" if enable else "suspend"
        await self._authed(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/{action}",
            json={"reason": "Auto-renew enabled" if enable else "Auto-renew disabled"},
        )
        log.info("paypal_auto_renew_set", subscription_id=subscription_id, enabled=enable)

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._authed(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": "Cancelled by customer"},
        )
        log.info("paypal_subscription_cancelled", subscription_id=subscription_id)

    # ── Capture / Sweep ──────────────────────────────────────────

    async def capture_order(self, order_id: str) -> PaymentOutcome | None:
        """Capture an approved order. The capture webhook still drives the license."""
        response = await self._authed(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"PayPal-Request-Id": f"capture-{order_id}"},
        )
        status = response.json().get("status")
        log.info("paypal_order_captured", order_id=order_id, status=status)
        if status == "COMPLETED":
            return PaymentOutcome.CONFIRMED
        if status in ("DECLINED", "VOIDED"):
            return PaymentOutcome.FAILED
        return None

    async def fetch_outcome(self, payment: Payment) -> PaymentOutcome | None:
        if not payment.external_transaction_id:
            return None
        response = await self._authed(
            "GET", f"/v2/checkout/orders/{payment.external_transaction_id}"
        )
        status = response.json().get("status")
        if status == "COMPLETED":
            return PaymentOutcome.CONFIRMED
        if status == "VOIDED":
            return PaymentOutcome.FAILED
        if status == "APPROVED":
            return await self.capture_order(payment.external_transaction_id)
        return None
