"""Adapter factory: one adapter per configured gateway, built from settings."""

from __future__ import annotations

import httpx

from config.settings import Settings, get_settings
from licensing.core.interfaces import GatewayAdapter, PaymentRepository
from licensing.core.logging import get_logger
from licensing.core.types import Gateway
from licensing.gateways.paypal import PayPalAdapter
from licensing.gateways.redsys import RedsysAdapter
from licensing.gateways.stripe import StripeAdapter

log = get_logger(__name__)


def build_adapters(
    payments: PaymentRepository,
    settings: Settings | None = None,
    http: httpx.AsyncClient | None = None,
) -> dict[Gateway, GatewayAdapter]:
    """Adapters for every gateway whose credentials are present.

    All adapters share ``http`` when given, so the caller owns its lifetime.
    """
    settings = settings or get_settings()
    timeout = settings.gateway_timeout_seconds
    backend = settings.backend_url.rstrip("/")
    frontend = settings.frontend_url.rstrip("/")
    adapters: dict[Gateway, GatewayAdapter] = {}

    if settings.stripe_secret_key.get_secret_value():
        adapters[Gateway.STRIPE] = StripeAdapter(
            payments,
            secret_key=settings.stripe_secret_key.get_secret_value(),
            webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
            api_base=settings.stripe_api_base,
            http=http,
            timeout_seconds=timeout,
        )

    if settings.redsys_merchant_code and settings.redsys_secret_key.get_secret_value():
        adapters[Gateway.REDSYS] = RedsysAdapter(
            payments,
            merchant_code=settings.redsys_merchant_code,
            terminal=settings.redsys_terminal,
            secret_key=settings.redsys_secret_key.get_secret_value(),
            redirect_url=settings.redsys_url,
            notification_url=f"{backend}/api/pagos/redsys/notification",
            return_url_ok=f"{frontend}/pagos/ok",
            return_url_ko=f"{frontend}/pagos/ko",
            merchant_name=settings.redsys_merchant_name,
            http=http,
            timeout_seconds=timeout,
        )

    if settings.paypal_client_id and settings.paypal_client_secret.get_secret_value():
        adapters[Gateway.PAYPAL] = PayPalAdapter(
            payments,
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret.get_secret_value(),
            webhook_id=settings.paypal_webhook_id,
            api_base=settings.paypal_api_base,
            return_url=f"{frontend}/pagos/paypal/return",
            cancel_url=f"{frontend}/pagos/paypal/cancel",
            http=http,
            timeout_seconds=timeout,
        )

    log.info("gateways_configured", gateways=sorted(g.value for g in adapters))
    return adapters
