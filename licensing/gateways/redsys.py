"""Card-redirect gateway adapter (Redsys virtual POS).

Purchases are started locally: the tenant's browser posts a signed form to
Redsys, and Redsys later calls our notification URL with the outcome.
Signature scheme ``HMAC_SHA256_V1``: a per-order key is derived by 3DES-CBC
encrypting the order number with the merchant secret, then used as the
HMAC-SHA256 key over the Base64 merchant parameters.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs

import httpx
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives.ciphers import Cipher, modes

from licensing.core.constants import (
    GATEWAY_TIMEOUT_SECONDS,
    REDSYS_CURRENCY_EUR,
    REDSYS_REFUND_OK,
    REDSYS_SIGNATURE_VERSION,
    REDSYS_TX_AUTHORIZATION,
    REDSYS_TX_REFUND,
)
from licensing.core.exceptions import GatewayError
from licensing.core.interfaces import PaymentRepository
from licensing.core.logging import get_logger
from licensing.core.types import (
    Gateway,
    Payment,
    PaymentEvent,
    PaymentOutcome,
    SubscriptionEvent,
    utcnow,
)
from licensing.gateways.base import BaseGatewayAdapter, RemoteStart, to_minor_units

log = get_logger(__name__)

_CURRENCY_CODES = {"EUR": REDSYS_CURRENCY_EUR}

# Responses that mean the operation is still in flight.
_IN_PROGRESS = {"9997", "9998", "9999"}

ERROR_MESSAGES: dict[str, str] = {
    "0101": "Card expired",
    "0102": "Card temporarily blocked or suspected of fraud",
    "0104": "Operation not allowed for this card",
    "0106": "PIN attempts exceeded",
    "0116": "Insufficient funds",
    "0118": "Card not registered",
    "0125": "Card not effective",
    "0129": "Wrong security code (CVV2/CVC2)",
    "0180": "Card not supported by the service",
    "0184": "Cardholder authentication failed",
    "0190": "Declined by issuer without reason",
    "0191": "Wrong expiry date",
    "0202": "Card temporarily blocked or suspected of fraud",
    "0904": "Merchant not registered",
    "0909": "System error",
    "0913": "Duplicate order",
    "0944": "Invalid session",
    "0950": "Refund not allowed",
    "9064": "Wrong number of card digits",
    "9078": "No valid payment method for this card",
    "9093": "Card does not exist",
    "9094": "Rejected by international servers",
    "9104": "Secure cardholder without secure purchase key",
    "9253": "Card fails check digit",
    "9912": "Issuer unavailable",
    "9915": "Payment cancelled by the user",
}


def error_message(code: str) -> str:
    return ERROR_MESSAGES.get(code, "Unknown error")


def _b64decode_any(value: str) -> bytes:
    """Decode standard or URL-safe Base64, padding optional."""
    normalised = value.replace("-", "+").replace("_", "/")
    normalised += "=" * (-len(normalised) % 4)
    return base64.b64decode(normalised)


def _urlsafe(signature: str) -> str:
    return signature.replace("+", "-").replace("/", "_").rstrip("=")


class RedsysAdapter(BaseGatewayAdapter):
    gateway = Gateway.REDSYS

    def __init__(
        self,
        payments: PaymentRepository,
        merchant_code: str,
        terminal: str,
        secret_key: str,
        redirect_url: str,
        notification_url: str,
        return_url_ok: str,
        return_url_ko: str,
        merchant_name: str = "",
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(payments, http=http, timeout_seconds=timeout_seconds, clock=clock)
        self._merchant_code = merchant_code
        self._terminal = terminal
        self._secret_key = secret_key
        self._redirect_url = redirect_url
        self._notification_url = notification_url
        self._url_ok = return_url_ok
        self._url_ko = return_url_ko
        self._merchant_name = merchant_name

    # ── Signing ──────────────────────────────────────────────────

    def _order_key(self, order: str) -> bytes:
        key = base64.b64decode(self._secret_key)
        data = order.encode()
        width = 16 if len(data) <= 16 else len(data) + (-len(data) % 8)
        encryptor = Cipher(TripleDES(key), modes.CBC(b"\0" * 8)).encryptor()
        return encryptor.update(data.ljust(width, b"\0")) + encryptor.finalize()

    def sign(self, merchant_parameters: str, order: str) -> str:
        digest = hmac.new(
            self._order_key(order), merchant_parameters.encode(), hashlib.sha256
        ).digest()
        return base64.b64encode(digest).decode()

    @staticmethod
    def encode_parameters(params: Mapping[str, str]) -> str:
        return base64.b64encode(json.dumps(params).encode()).decode()

    @staticmethod
    def decode_parameters(merchant_parameters: str) -> dict[str, Any]:
        return json.loads(_b64decode_any(merchant_parameters))

    # ── Purchases ────────────────────────────────────────────────

    def _new_external_id(self, payment_id: str) -> str:
        """Order number: 4 digits then up to 8 alphanumerics."""
        millis = int(self._clock().timestamp() * 1000) % 10**8
        return f"{secrets.randbelow(10_000):04d}{millis:08d}"

    async def _start_remote(self, payment: Payment) -> RemoteStart:
        currency = _CURRENCY_CODES.get(payment.currency.upper())
        if currency is None:
            raise GatewayError(
                "currency not supported by Redsys",
                context={"currency": payment.currency},
            )
        order = payment.external_transaction_id
        params = {
            "DS_MERCHANT_AMOUNT": str(to_minor_units(payment.amount)),
            "DS_MERCHANT_ORDER": order,
            "DS_MERCHANT_MERCHANTCODE": self._merchant_code,
            "DS_MERCHANT_CURRENCY": currency,
            "DS_MERCHANT_TRANSACTIONTYPE": REDSYS_TX_AUTHORIZATION,
            "DS_MERCHANT_TERMINAL": self._terminal,
            "DS_MERCHANT_MERCHANTURL": self._notification_url,
            "DS_MERCHANT_URLOK": self._url_ok,
            "DS_MERCHANT_URLKO": self._url_ko,
            "DS_MERCHANT_MERCHANTNAME": self._merchant_name,
            "DS_MERCHANT_PRODUCTDESCRIPTION": payment.description or payment.concept.value,
            "DS_MERCHANT_MERCHANTDATA": payment.payment_id,
        }
        encoded = self.encode_parameters(params)
        log.info("redsys_form_built", payment_id=payment.payment_id, order=order)
        return RemoteStart(
            external_id=order,
            redirect_url=self._redirect_url,
            form_fields={
                "Ds_SignatureVersion": REDSYS_SIGNATURE_VERSION,
                "Ds_MerchantParameters": encoded,
                "Ds_Signature": self.sign(encoded, order),
            },
        )

    # ── Notifications ────────────────────────────────────────────

    @staticmethod
    def _notification_fields(raw_payload: bytes) -> dict[str, str]:
        body = raw_payload.decode()
        if body.lstrip().startswith("{"):
            return {k: str(v) for k, v in json.loads(body).items()}
        return {k: v[0] for k, v in parse_qs(body).items() if v}

    async def verify_event_signature(
        self, raw_payload: bytes, headers: Mapping[str, str]
    ) -> bool:
        try:
            fields = self._notification_fields(raw_payload)
            encoded = fields["Ds_MerchantParameters"]
            received = fields["Ds_Signature"]
            params = {k.lower(): v for k, v in self.decode_parameters(encoded).items()}
            order = str(params["ds_order"])
        except (KeyError, ValueError, UnicodeDecodeError) as exc:
            log.warning("redsys_notification_malformed", error=str(exc))
            return False
        expected = self.sign(encoded, order)
        return hmac.compare_digest(_urlsafe(expected), _urlsafe(received))

    def parse_event(self, raw_payload: bytes) -> PaymentEvent | SubscriptionEvent | None:
        fields = self._notification_fields(raw_payload)
        raw_params = self.decode_parameters(fields["Ds_MerchantParameters"])
        params = {k.lower(): str(v) for k, v in raw_params.items()}
        order = params["ds_order"]
        code = params.get("ds_response", "").zfill(4)
        reference = params.get("ds_merchantdata") or None

        if params.get("ds_transactiontype") == REDSYS_TX_REFUND:
            if code != REDSYS_REFUND_OK:
                log.warning("redsys_refund_not_confirmed", order=order, code=code)
                return None
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=order,
                outcome=PaymentOutcome.REFUNDED,
                raw_payload=raw_params,
                payment_reference=reference,
            )

        if code in _IN_PROGRESS:
            log.info("redsys_operation_in_progress", order=order, code=code)
            return None
        if code.isdigit() and 0 <= int(code) <= 99:
            return PaymentEvent(
                gateway=self.gateway,
                external_transaction_id=order,
                outcome=PaymentOutcome.CONFIRMED,
                raw_payload=raw_params,
                payment_reference=reference,
            )
        return PaymentEvent(
            gateway=self.gateway,
            external_transaction_id=order,
            outcome=PaymentOutcome.FAILED,
            raw_payload=raw_params,
            payment_reference=reference,
            detail=f"{code}: {error_message(code)}",
        )

    # ── Subscriptions ────────────────────────────────────────────
    # Redsys payments here are one-off authorisations; renewal is driven by
    # our own subscription payments, so there is no remote state to change.

    async def toggle_auto_renew(self, subscription_id: str, enable: bool) -> None:
        log.debug("redsys_auto_renew_local_only", subscription_id=subscription_id, enabled=enable)

    async def cancel_subscription(self, subscription_id: str) -> None:
        log.debug("redsys_cancel_local_only", subscription_id=subscription_id)

    async def fetch_outcome(self, payment: Payment) -> PaymentOutcome | None:
        # No query API in the redirect integration; the sweep ages these out.
        return None
