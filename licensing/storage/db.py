"""PostgreSQL connection and schema definitions."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from licensing.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Catalog ──────────────────────────────────────────────────────

plans = Table(
    "plans",
    metadata,
    Column("plan_id", String, primary_key=True),
    Column("slug", String, nullable=False, unique=True),
    Column("name", String, nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("monthly_price", Numeric(12, 2), nullable=False),
    Column("annual_price", Numeric(12, 2), nullable=False),
    Column("limits", JSONB, nullable=False),
    Column("modules", JSONB, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("active", Boolean, nullable=False, default=True),
)

addons = Table(
    "addons",
    metadata,
    Column("addon_id", String, primary_key=True),
    Column("slug", String, nullable=False, unique=True),
    Column("name", String, nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("recurring", Boolean, nullable=False, default=True),
    Column("monthly_price", Numeric(12, 2), nullable=False),
    Column("annual_price", Numeric(12, 2), nullable=False),
    Column("extra_limits", JSONB, nullable=False),
    Column("modules", JSONB, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("active", Boolean, nullable=False, default=True),
)

# ── Licenses ─────────────────────────────────────────────────────

licenses = Table(
    "licenses",
    metadata,
    Column("company_id", String, primary_key=True),
    Column("plan_id", String, nullable=False),
    Column("state", String, nullable=False, index=True),
    Column("is_trial", Boolean, nullable=False),
    Column("trial_start", DateTime(timezone=True)),
    Column("trial_end", DateTime(timezone=True), index=True),
    Column("subscription_type", String, nullable=False),
    Column("start_date", DateTime(timezone=True)),
    Column("renewal_date", DateTime(timezone=True), index=True),
    Column("cancellation_date", DateTime(timezone=True)),
    Column("auto_renew", Boolean, nullable=False),
    Column("pending_plan_id", String),
    Column("pending_plan_payment_id", String),
    Column("pending_subscription_type", String),
    Column("pending_addon_slugs", JSONB, nullable=False),
    Column("pending_addons_payment_id", String),
    Column("scheduled_plan_id", String),
    Column("addons", JSONB, nullable=False),
    Column("subscription_gateway", String),
    Column("subscription_external_id", String),
    Column("history", JSONB, nullable=False),
    Column("version", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_licenses_subscription", "subscription_gateway", "subscription_external_id"),
)

license_usage = Table(
    "license_usage",
    metadata,
    Column("company_id", String, primary_key=True),
    Column("usage_key", String, primary_key=True),
    Column("value", Float, nullable=False, default=0),
)

# ── Payments & Invoices ──────────────────────────────────────────

payments = Table(
    "payments",
    metadata,
    Column("payment_id", String, primary_key=True),
    Column("company_id", String, nullable=False, index=True),
    Column("gateway", String, nullable=False),
    Column("external_transaction_id", String, nullable=False, default=""),
    Column("concept", String, nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("state", String, nullable=False, index=True),
    Column("description", Text, nullable=False, default=""),
    Column("metadata", JSONB, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("paid_at", DateTime(timezone=True)),
    Column("refunded_at", DateTime(timezone=True)),
    Column("failure_detail", Text, nullable=False, default=""),
    Column("invoice_id", String),
    Column("invoice_number", String),
    Index(
        "uq_payments_gateway_external",
        "gateway",
        "external_transaction_id",
        unique=True,
        postgresql_where=text("external_transaction_id <> ''"),
    ),
)

invoices = Table(
    "invoices",
    metadata,
    Column("invoice_id", String, primary_key=True),
    Column("number", String, nullable=False, unique=True),
    Column("series", String, nullable=False),
    Column("payment_id", String, nullable=False, index=True),
    Column("company_id", String, nullable=False, index=True),
    Column("customer", JSONB, nullable=False),
    Column("lines", JSONB, nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("total", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("issued_at", DateTime(timezone=True), nullable=False),
    Column("period_start", DateTime(timezone=True)),
    Column("period_end", DateTime(timezone=True)),
    Column("state", String, nullable=False),
    Column("credit_note_of", String),
    Index(
        "uq_invoices_payment",
        "payment_id",
        unique=True,
        postgresql_where=text("credit_note_of IS NULL"),
    ),
)

invoice_counters = Table(
    "invoice_counters",
    metadata,
    Column("series", String, primary_key=True),
    Column("last_value", Integer, nullable=False),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create all tables."""
    engine = await get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    log.info("schema_initialized", tables=sorted(metadata.tables))


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
