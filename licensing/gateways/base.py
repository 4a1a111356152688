"""Base gateway adapter with common logic (local payment first, timeout, failure marking).

Subclasses implement ``_start_remote()`` for the provider-specific call.
"""

from __future__ import annotations

import asyncio
from abc import abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
from uuid_extensions import uuid7

from licensing.core.constants import GATEWAY_TIMEOUT_SECONDS
from licensing.core.exceptions import GatewayError, GatewayTimeoutError
from licensing.core.interfaces import GatewayAdapter, PaymentRepository
from licensing.core.logging import get_logger
from licensing.core.types import (
    Payment,
    PaymentConcept,
    PaymentState,
    PurchaseInitiation,
    utcnow,
)

log = get_logger(__name__)


@dataclass
class RemoteStart:
    """What the provider handed back when a purchase was started."""

    external_id: str = ""
    client_token: str = ""
    redirect_url: str = ""
    form_fields: dict[str, str] = field(default_factory=dict)
    requires_action: bool = True


class BaseGatewayAdapter(GatewayAdapter):
    """Template for ``initiate_purchase``.

    Order of operations:

    1. persist a local ``pending`` payment (nothing else happens if this fails);
    2. call the provider under ``timeout_seconds``;
    3. a definitive rejection marks the payment ``failed`` and raises a
       retryable ``GatewayError``; a timeout leaves it ``pending`` for the
       webhook or the sweep to resolve.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._payments = payments
        self._http = http or httpx.AsyncClient(timeout=timeout_seconds)
        self._timeout = timeout_seconds
        self._clock = clock

    async def aclose(self) -> None:
        await self._http.aclose()

    def _new_external_id(self, payment_id: str) -> str:
        """External id known before the remote call; empty when the provider assigns it."""
        return ""

    @abstractmethod
    async def _start_remote(self, payment: Payment) -> RemoteStart:
        """Provider-specific purchase start. Raise ``GatewayError`` on rejection."""
        ...

    async def initiate_purchase(
        self,
        company_id: str,
        amount: Decimal,
        currency: str,
        concept: PaymentConcept,
        metadata: Mapping[str, Any],
        *,
        description: str = "",
        subtotal: Decimal | None = None,
        tax: Decimal | None = None,
    ) -> PurchaseInitiation:
        now = self._clock()
        payment_id = str(uuid7())
        payment = Payment(
            payment_id=payment_id,
            company_id=company_id,
            gateway=self.gateway,
            concept=concept,
            amount=amount,
            currency=currency,
            subtotal=subtotal if subtotal is not None else amount,
            tax=tax if tax is not None else Decimal("0"),
            external_transaction_id=self._new_external_id(payment_id),
            description=description,
            metadata=dict(metadata),
            created_at=now,
            updated_at=now,
        )
        await self._payments.create(payment)
        log.info(
            "payment_created",
            gateway=self.gateway.value,
            company_id=company_id,
            payment_id=payment_id,
            amount=str(amount),
            concept=concept.value,
        )

        try:
            remote = await asyncio.wait_for(self._start_remote(payment), timeout=self._timeout)
        except (asyncio.TimeoutError, GatewayTimeoutError):
            log.warning(
                "gateway_timeout",
                gateway=self.gateway.value,
                company_id=company_id,
                payment_id=payment_id,
                timeout=self._timeout,
            )
            return PurchaseInitiation(payment=payment, status="processing")
        except (GatewayError, httpx.HTTPError) as exc:
            await self._mark_failed(payment, str(exc))
            raise GatewayError(
                f"{self.gateway.value} rejected the purchase",
                context={"company_id": company_id, "payment_id": payment_id, "error": str(exc)},
                retryable=True,
            ) from exc

        if remote.external_id:
            payment.external_transaction_id = remote.external_id
        if not remote.requires_action:
            payment.transition(PaymentState.PROCESSING, self._clock())
        payment.updated_at = self._clock()
        await self._payments.save(payment)

        return PurchaseInitiation(
            payment=payment,
            status="requires_action" if remote.requires_action else "processing",
            client_token=remote.client_token,
            redirect_url=remote.redirect_url,
            form_fields=remote.form_fields,
        )

    async def _mark_failed(self, payment: Payment, detail: str) -> None:
        payment.transition(PaymentState.FAILED, self._clock(), detail=detail)
        await self._payments.save(payment)
        log.error(
            "gateway_purchase_failed",
            gateway=self.gateway.value,
            company_id=payment.company_id,
            payment_id=payment.payment_id,
            error=detail,
        )

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """HTTP call translated into gateway errors.

        4xx responses are definitive rejections; 5xx and transport errors are
        retryable.
        """
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(
                f"{self.gateway.value} request timed out",
                context={"url": url},
                retryable=True,
            ) from exc
        except httpx.TransportError as exc:
            raise GatewayError(
                f"{self.gateway.value} unreachable",
                context={"url": url, "error": str(exc)},
                retryable=True,
            ) from exc

        if response.status_code >= 400:
            raise GatewayError(
                f"{self.gateway.value} returned {response.status_code}",
                context={"url": url, "body": response.text[:500]},
                retryable=response.status_code >= 500,
            )
        return response


def to_minor_units(amount: Decimal) -> int:
    """Integer cents for providers that take minor units."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup over a plain mapping."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""
