"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

from decimal import Decimal

# ── Billing Cycles (days) ────────────────────────────────────────
MONTHLY_CYCLE_DAYS = 30
ANNUAL_CYCLE_DAYS = 365
FULL_CHARGE_THRESHOLD = Decimal("0.9")   # >= 90% of cycle left: charge in full

# ── Money ────────────────────────────────────────────────────────
DEFAULT_CURRENCY = "EUR"
DEFAULT_IVA_RATE = Decimal("0.21")
CENT = Decimal("0.01")

# ── Trial ────────────────────────────────────────────────────────
DEFAULT_TRIAL_DAYS = 30
TRIAL_PLAN_SLUG = "demo"

# ── Usage ────────────────────────────────────────────────────────
UNLIMITED = -1
USAGE_WARNING_THRESHOLD = 0.70

# ── Modules ──────────────────────────────────────────────────────
ALL_MODULES = "*"

# ── Reconciliation ───────────────────────────────────────────────
RECONCILE_MAX_RETRIES = 3
RECONCILE_BACKOFF_BASE = 0.05   # seconds, doubled per attempt
PAYMENT_SWEEP_MAX_AGE_HOURS = 48

# ── Gateways ─────────────────────────────────────────────────────
GATEWAY_TIMEOUT_SECONDS = 15.0
STRIPE_SIGNATURE_TOLERANCE = 300   # seconds
REDSYS_CURRENCY_EUR = "978"
REDSYS_TX_AUTHORIZATION = "0"
REDSYS_TX_REFUND = "3"
REDSYS_REFUND_OK = "0900"
REDSYS_SIGNATURE_VERSION = "HMAC_SHA256_V1"

# ── Invoicing ────────────────────────────────────────────────────
INVOICE_SERIES = "FS"
CREDIT_NOTE_SERIES = "FSR"
INVOICE_NUMBER_WIDTH = 6

# ── Catalog ──────────────────────────────────────────────────────
CATALOG_CACHE_TTL_SECONDS = 300
