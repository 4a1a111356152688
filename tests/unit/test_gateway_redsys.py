"""Tests for the card-redirect adapter (signed forms and notifications)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlencode

import pytest

from licensing.core.exceptions import GatewayError
from licensing.core.types import Gateway, PaymentConcept, PaymentEvent, PaymentOutcome, PaymentState
from licensing.gateways.redsys import RedsysAdapter, error_message
from licensing.storage.memory import InMemoryStore

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
# Public test key from the Redsys integration guide.
SECRET = "sq7HjrUOBfKmC576ILgskD5srU870gJ7"


def _adapter(store: InMemoryStore, secret: str = SECRET) -> RedsysAdapter:
    return RedsysAdapter(
        store.payments,
        merchant_code="999008881",
        terminal="1",
        secret_key=secret,
        redirect_url="https://sis-t.redsys.es:25443/sis/realizarPago",
        notification_url="https://api.example.com/api/pagos/redsys/notification",
        return_url_ok="https://app.example.com/pagos/ok",
        return_url_ko="https://app.example.com/pagos/ko",
        merchant_name="Acme",
        clock=lambda: NOW,
    )


def _notification(
    adapter: RedsysAdapter,
    order: str = "123456789012",
    response: str = "0000",
    transaction_type: str = "0",
    merchant_data: str = "pay-1",
    urlsafe: bool = True,
) -> bytes:
    encoded = adapter.encode_parameters(
        {
            "Ds_Order": order,
            "Ds_Response": response,
            "Ds_TransactionType": transaction_type,
            "Ds_MerchantData": merchant_data,
            "Ds_Amount": "1452",
        }
    )
    signature = adapter.sign(encoded, order)
    if urlsafe:
        signature = signature.replace("+", "-").replace("/", "_")
    return urlencode(
        {
            "Ds_SignatureVersion": "HMAC_SHA256_V1",
            "Ds_MerchantParameters": encoded,
            "Ds_Signature": signature,
        }
    ).encode()


class TestSigning:
    def test_signature_depends_on_order(self) -> None:
        adapter = _adapter(InMemoryStore())
        encoded = adapter.encode_parameters({"DS_MERCHANT_AMOUNT": "100"})
        assert adapter.sign(encoded, "000000000001") != adapter.sign(encoded, "000000000002")

    def test_parameters_decode_urlsafe(self) -> None:
        params = {"Ds_Order": "0001", "Ds_MerchantData": "??>>"}
        encoded = RedsysAdapter.encode_parameters(params)
        urlsafe = encoded.replace("+", "-").replace("/", "_").rstrip("=")
        assert RedsysAdapter.decode_parameters(urlsafe) == params


class TestInitiatePurchase:
    @pytest.mark.asyncio
    async def test_builds_signed_form(self) -> None:
        store = InMemoryStore()
        adapter = _adapter(store)
        initiation = await adapter.initiate_purchase(
            "c1", Decimal("42.35"), "EUR", PaymentConcept.SUBSCRIPTION, {}, description="Plan Basico"
        )
        payment = initiation.payment
        order = payment.external_transaction_id
        assert len(order) == 12 and order.isdigit()
        assert initiation.status == "requires_action"
        assert initiation.redirect_url.endswith("/sis/realizarPago")

        fields = initiation.form_fields
        params = adapter.decode_parameters(fields["Ds_MerchantParameters"])
        assert params["DS_MERCHANT_AMOUNT"] == "4235"
        assert params["DS_MERCHANT_ORDER"] == order
        assert params["DS_MERCHANT_CURRENCY"] == "978"
        assert params["DS_MERCHANT_MERCHANTDATA"] == payment.payment_id
        assert fields["Ds_Signature"] == adapter.sign(fields["Ds_MerchantParameters"], order)

        stored = await store.payments.find_by_external(Gateway.REDSYS, order)
        assert stored is not None
        assert stored.state == PaymentState.PENDING

    @pytest.mark.asyncio
    async def test_unsupported_currency(self) -> None:
        store = InMemoryStore()
        with pytest.raises(GatewayError) as excinfo:
            await _adapter(store).initiate_purchase("c1", Decimal("10"), "USD", PaymentConcept.ADDON, {})
        payment = await store.payments.get(excinfo.value.context["payment_id"])
        assert payment is not None
        assert payment.state == PaymentState.FAILED


class TestNotifications:
    @pytest.mark.asyncio
    async def test_valid_signature(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert await adapter.verify_event_signature(_notification(adapter), {})

    @pytest.mark.asyncio
    async def test_standard_base64_signature_accepted(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert await adapter.verify_event_signature(_notification(adapter, urlsafe=False), {})

    @pytest.mark.asyncio
    async def test_json_body_accepted(self) -> None:
        adapter = _adapter(InMemoryStore())
        encoded = adapter.encode_parameters({"Ds_Order": "123456789012", "Ds_Response": "0000"})
        body = json.dumps(
            {"Ds_MerchantParameters": encoded, "Ds_Signature": adapter.sign(encoded, "123456789012")}
        ).encode()
        assert await adapter.verify_event_signature(body, {})

    @pytest.mark.asyncio
    async def test_signed_with_other_key(self) -> None:
        other = _adapter(InMemoryStore(), secret="Mk9m98IfEblmPfrpsawt7BmxObt98Jev")
        adapter = _adapter(InMemoryStore())
        assert not await adapter.verify_event_signature(_notification(other), {})

    @pytest.mark.asyncio
    async def test_malformed_body(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert not await adapter.verify_event_signature(b"Ds_Signature=abc", {})
        assert not await adapter.verify_event_signature(b"not a form", {})

    def test_authorised(self) -> None:
        adapter = _adapter(InMemoryStore())
        event = adapter.parse_event(_notification(adapter, response="0"))
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.CONFIRMED
        assert event.external_transaction_id == "123456789012"
        assert event.payment_reference == "pay-1"

    def test_declined(self) -> None:
        adapter = _adapter(InMemoryStore())
        event = adapter.parse_event(_notification(adapter, response="0190"))
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.FAILED
        assert event.detail == "0190: Declined by issuer without reason"

    def test_in_progress_ignored(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert adapter.parse_event(_notification(adapter, response="9998")) is None

    def test_refund(self) -> None:
        adapter = _adapter(InMemoryStore())
        event = adapter.parse_event(_notification(adapter, response="0900", transaction_type="3"))
        assert isinstance(event, PaymentEvent)
        assert event.outcome == PaymentOutcome.REFUNDED

    def test_refund_not_confirmed(self) -> None:
        adapter = _adapter(InMemoryStore())
        assert adapter.parse_event(_notification(adapter, response="0950", transaction_type="3")) is None

    def test_error_messages(self) -> None:
        assert error_message("0116") == "Insufficient funds"
        assert error_message("4242") == "Unknown error"


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_no_remote_state(self) -> None:
        adapter = _adapter(InMemoryStore())
        await adapter.toggle_auto_renew("sub-1", False)
        await adapter.cancel_subscription("sub-1")
