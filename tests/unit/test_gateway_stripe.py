"""Tests for the card processor adapter and the shared purchase template."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from licensing.core.exceptions import GatewayError
from licensing.core.types import (
    Gateway,
    Payment,
    PaymentConcept,
    PaymentEvent,
    PaymentOutcome,
    PaymentState,
    SubscriptionEvent,
    SubscriptionStatus,
)
from licensing.gateways.base import header, to_minor_units
from licensing.gateways.stripe import StripeAdapter
from licensing.storage.memory import InMemoryStore

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
SECRET = "whsec_test"


def _adapter(store: InMemoryStore, handler: httpx.MockTransport | None = None, timeout: float = 5.0) -> StripeAdapter:
    transport = handler or httpx.MockTransport(lambda request: httpx.Response(500))
    return StripeAdapter(
        store.payments,
        secret_key="sk_test",
        webhook_secret=SECRET,
        http=httpx.AsyncClient(transport=transport),
        timeout_seconds=timeout,
        clock=lambda: NOW,
    )


def _signed(payload: bytes, timestamp: int | None = None, secret: str = SECRET) -> dict[str, str]:
    ts = timestamp if timestamp is not None else int(NOW.timestamp())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={ts},v1={sig}"}


def _event(event_type: str, obj: dict[str, object]) -> bytes:
    return json.dumps({"type": event_type, "data": {"object": obj}}).encode()


class TestHelpers:
    def test_minor_units(self) -> None:
        assert to_minor_units(Decimal("14.52")) == 1452
        assert to_minor_units(Decimal("0.005")) == 1

    def test_header_lookup_is_case_insensitive(self) -> None:
        assert header({"Stripe-Signature": "x"}, "stripe-signature") == "x"
        assert header({}, "missing") == ""


class TestSignature:
    @pytest.mark.asyncio
    async def test_valid_signature(self) -> None:
        payload = _event("payment_intent.succeeded", {"id": "pi_1"})
        assert await _adapter(InMemoryStore()).verify_event_signature(payload, _signed(payload))

    @pytest.mark.asyncio
    async def test_tampered_payload(self) -> None:
        payload = _event("payment_intent.succeeded", {"id": "pi_1"})
        headers = _signed(payload)
        assert not await _adapter(InMemoryStore()).verify_event_signature(payload + b" ", headers)

    @pytest.mark.asyncio
    async def test_wrong_secret(self) -> None:
        payload = _event("payment_intent.succeeded", {"id": "pi_1"})
        headers = _signed(payload, secret="other")
        assert not await _adapter(InMemoryStore()).verify_event_signature(payload, headers)

    @pytest.mark.asyncio
    async def test_stale_timestamp(self) -> None:
        payload = _event("payment_intent.succeeded", {"id": "pi_1"})
        headers = _signed(payload, timestamp=int(NOW.timestamp()) - 3600)
        assert not await _adapter(InMemoryStore()).verify_event_signature(payload, headers)

    @pytest.mark.asyncio
    async def test_missing_header(self) -> None:
        assert not await _adapter(InMemoryStore()).verify_event_signature(b"{}", {})


class TestParseEvent:
    def test_succeeded(self) -> None:
        event = _adapter(InMemoryStore()).parse_event(
            _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"payment_id": "pay-1"}})
        )
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.CONFIRMED
        assert event.external_transaction_id == "pi_1"
        assert event.payment_reference == "pay-1"

    def test_failed_carries_message(self) -> None:
        event = _adapter(InMemoryStore()).parse_event(
            _event(
                "payment_intent.payment_failed",
                {"id": "pi_1", "last_payment_error": {"message": "card declined"}},
            )
        )
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.FAILED
        assert event.detail == "card declined"

    def test_refund_uses_intent_id(self) -> None:
        event = _adapter(InMemoryStore()).parse_event(
            _event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"})
        )
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.REFUNDED
        assert event.external_transaction_id == "pi_1"

    def test_subscription_events(self) -> None:
        adapter = _adapter(InMemoryStore())
        deleted = adapter.parse_event(_event("customer.subscription.deleted", {"id": "sub_1"}))
        assert isinstance(deleted, SubscriptionEvent)
        assert deleted.status == SubscriptionStatus.CANCELLED

        past_due = adapter.parse_event(
            _event("customer.subscription.updated", {"id": "sub_1", "status": "past_due"})
        )
        assert isinstance(past_due, SubscriptionEvent)
        assert past_due.status == SubscriptionStatus.SUSPENDED

        failed = adapter.parse_event(_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}))
        assert isinstance(failed, SubscriptionEvent)
        assert failed.status == SubscriptionStatus.PAYMENT_FAILED

    def test_unhandled_type_ignored(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert adapter.parse_event(_event("customer.created", {"id": "cus_1"})) is None
        assert adapter.parse_event(
            _event("customer.subscription.updated", {"id": "sub_1", "status": "incomplete"})
        ) is None


class TestInitiatePurchase:
    @pytest.mark.asyncio
    async def test_creates_intent(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "pi_1", "client_secret": "pi_1_secret", "status": "requires_payment_method"})

        store = InMemoryStore()
        adapter = _adapter(store, httpx.MockTransport(handler))
        initiation = await adapter.initiate_purchase(
            "c1", Decimal("14.52"), "EUR", PaymentConcept.ADDON, {"addon_quantities": {"crm": 1}},
            subtotal=Decimal("12.00"), tax=Decimal("2.52"),
        )
        assert initiation.status == "requires_action"
        assert initiation.client_token == "pi_1_secret"

        body = seen[0].content.decode()
        assert "amount=1452" in body
        assert seen[0].headers["Idempotency-Key"] == initiation.payment.payment_id

        stored = await store.payments.find_by_external(Gateway.STRIPE, "pi_1")
        assert stored is not None
        assert stored.state == PaymentState.PENDING
        assert stored.subtotal == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_rejection_marks_payment_failed(self) -> None:
        store = InMemoryStore()
        adapter = _adapter(
            store, httpx.MockTransport(lambda request: httpx.Response(402, json={"error": {}}))
        )
        with pytest.raises(GatewayError) as excinfo:
            await adapter.initiate_purchase("c1", Decimal("10"), "EUR", PaymentConcept.ADDON, {})
        assert excinfo.value.retryable
        payment = await store.payments.get(excinfo.value.context["payment_id"])
        assert payment is not None
        assert payment.state == PaymentState.FAILED

    @pytest.mark.asyncio
    async def test_timeout_leaves_payment_pending(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"id": "pi_late"})

        store = InMemoryStore()
        adapter = _adapter(store, httpx.MockTransport(slow), timeout=0.01)
        initiation = await adapter.initiate_purchase("c1", Decimal("10"), "EUR", PaymentConcept.ADDON, {})
        assert initiation.status == "processing"
        payment = await store.payments.get(initiation.payment.payment_id)
        assert payment is not None
        assert payment.state == PaymentState.PENDING
        assert payment.external_transaction_id == ""


class TestFetchOutcome:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "intent,expected",
        [
            ({"status": "succeeded"}, PaymentOutcome.CONFIRMED),
            ({"status": "canceled"}, PaymentOutcome.FAILED),
            ({"status": "requires_payment_method", "last_payment_error": {"code": "x"}}, PaymentOutcome.FAILED),
            ({"status": "processing"}, None),
        ],
    )
    async def test_by_intent_id(self, intent: dict[str, object], expected: PaymentOutcome | None) -> None:
        adapter = _adapter(
            InMemoryStore(), httpx.MockTransport(lambda request: httpx.Response(200, json=intent))
        )
        payment = Payment(
            payment_id="pay-1",
            company_id="c1",
            gateway=Gateway.STRIPE,
            concept=PaymentConcept.ADDON,
            amount=Decimal("10"),
            external_transaction_id="pi_1",
        )
        assert await adapter.fetch_outcome(payment) == expected

    @pytest.mark.asyncio
    async def test_search_by_reference(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"id": "pi_1", "status": "succeeded"}]})

        adapter = _adapter(InMemoryStore(), httpx.MockTransport(handler))
        payment = Payment(
            payment_id="pay-1",
            company_id="c1",
            gateway=Gateway.STRIPE,
            concept=PaymentConcept.ADDON,
            amount=Decimal("10"),
        )
        assert await adapter.fetch_outcome(payment) == PaymentOutcome.CONFIRMED
        assert seen[0].url.path == "/v1/payment_intents/search"

    @pytest.mark.asyncio
    async def test_server_error_raises(self) -> None:
        adapter = _adapter(InMemoryStore())
        payment = Payment(
            payment_id="pay-1",
            company_id="c1",
            gateway=Gateway.STRIPE,
            concept=PaymentConcept.ADDON,
            amount=Decimal("10"),
            external_transaction_id="pi_1",
        )
        with pytest.raises(GatewayError) as excinfo:
            await adapter.fetch_outcome(payment)
        assert excinfo.value.retryable
