"""Notifier that only records what would have been sent.

Used when no mail transport is wired in (workers, scripts, tests).
"""

from __future__ import annotations

from licensing.billing.summary import BillingSummary
from licensing.core.interfaces import Notifier
from licensing.core.logging import get_logger
from licensing.core.types import InvoiceRef

log = get_logger(__name__)


class LoggingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_invoice_email(self, invoice_ref: InvoiceRef) -> None:
        self.sent.append(("invoice", invoice_ref.number))
        log.info("invoice_email_queued", invoice=invoice_ref.number)

    async def send_payment_confirmation(self, company_id: str, summary: BillingSummary) -> None:
        self.sent.append(("payment_confirmation", company_id))
        log.info(
            "payment_confirmation_queued",
            company_id=company_id,
            plan=summary.plan_slug,
            monthly_equivalent=str(summary.monthly_equivalent),
        )
