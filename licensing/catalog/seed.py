"""Default catalog: plans and add-ons loaded by ``scripts/seed_catalog.py``.

Prices are in EUR, tax excluded.
"""

from __future__ import annotations

from decimal import Decimal

from licensing.catalog.models import AddOn, Plan
from licensing.core.constants import ALL_MODULES, TRIAL_PLAN_SLUG, UNLIMITED
from licensing.core.types import LimitKey

L = LimitKey

_BASE_MODULES = frozenset({"clientes", "productos", "ventas", "informes"})


def _plan(
    slug: str,
    name: str,
    monthly: str,
    annual: str,
    limits: dict[LimitKey, int | float],
    modules: set[str],
    description: str = "",
) -> Plan:
    return Plan(
        plan_id=f"plan-{slug}",
        slug=slug,
        name=name,
        monthly_price=Decimal(monthly),
        annual_price=Decimal(annual),
        limits=limits,
        modules=frozenset(modules),
        description=description,
    )


def _addon(
    slug: str,
    name: str,
    monthly: str,
    *,
    recurring: bool = True,
    extra: dict[LimitKey, int | float] | None = None,
    modules: set[str] | None = None,
) -> AddOn:
    price = Decimal(monthly)
    return AddOn(
        addon_id=f"addon-{slug}",
        slug=slug,
        name=name,
        monthly_price=price,
        annual_price=price * 10 if recurring else price,
        recurring=recurring,
        extra_limits=extra or {},
        modules=frozenset(modules or ()),
    )


DEFAULT_PLANS: list[Plan] = [
    _plan(
        TRIAL_PLAN_SLUG, "Demo", "0", "0",
        {
            L.CONCURRENT_USERS: 2, L.TOTAL_USERS: 3, L.INVOICES_PER_MONTH: 50,
            L.CATALOG_PRODUCTS: 100, L.WAREHOUSES: 1, L.CLIENTS: 100,
            L.STORAGE_GB: 1, L.ACTIVE_TERMINALS: 1,
        },
        {ALL_MODULES},
        "Trial plan",
    ),
    _plan(
        "solo-fichaje", "Solo Fichaje", "15", "150",
        {
            L.CONCURRENT_USERS: 5, L.TOTAL_USERS: 10, L.INVOICES_PER_MONTH: 0,
            L.CATALOG_PRODUCTS: 0, L.WAREHOUSES: 0, L.CLIENTS: 0, L.STORAGE_GB: 1,
        },
        {"rrhh", "calendarios"},
        "Time tracking only",
    ),
    _plan(
        "starter", "Starter", "19", "190",
        {
            L.CONCURRENT_USERS: 1, L.TOTAL_USERS: 2, L.INVOICES_PER_MONTH: 100,
            L.CATALOG_PRODUCTS: 200, L.WAREHOUSES: 1, L.CLIENTS: 200, L.STORAGE_GB: 2,
        },
        set(_BASE_MODULES),
    ),
    _plan(
        "basico", "Basico", "35", "349",
        {
            L.CONCURRENT_USERS: 2, L.TOTAL_USERS: 10, L.INVOICES_PER_MONTH: 200,
            L.CATALOG_PRODUCTS: 500, L.WAREHOUSES: 2, L.CLIENTS: 500, L.STORAGE_GB: 5,
        },
        _BASE_MODULES | {"compras", "inventario"},
    ),
    _plan(
        "profesional", "Profesional", "99", "990",
        {
            L.CONCURRENT_USERS: 15, L.TOTAL_USERS: 30, L.INVOICES_PER_MONTH: 1000,
            L.CATALOG_PRODUCTS: 5000, L.WAREHOUSES: 5, L.CLIENTS: 5000,
            L.STORAGE_GB: 20, L.ACTIVE_TERMINALS: 3,
        },
        _BASE_MODULES | {
            "compras", "inventario", "contabilidad", "proyectos",
            "crm", "tpv", "tesoreria", "calendarios",
        },
    ),
    _plan(
        "enterprise", "Enterprise", "249", "2490",
        {
            L.CONCURRENT_USERS: UNLIMITED, L.TOTAL_USERS: UNLIMITED,
            L.INVOICES_PER_MONTH: UNLIMITED, L.CATALOG_PRODUCTS: UNLIMITED,
            L.WAREHOUSES: UNLIMITED, L.CLIENTS: UNLIMITED, L.STORAGE_GB: 100,
            L.ACTIVE_TERMINALS: UNLIMITED, L.API_CALLS_PER_DAY: UNLIMITED,
        },
        {ALL_MODULES},
    ),
]

DEFAULT_ADDONS: list[AddOn] = [
    _addon("restauracion", "Restauracion", "25", modules={"restauracion"}),
    _addon("ecommerce", "E-commerce", "15", modules={"ecommerce"}),
    _addon("firmas", "Firmas Digitales", "8", modules={"firmas"}),
    _addon("crm", "CRM", "12", modules={"crm"}),
    _addon("contabilidad", "Contabilidad", "15", modules={"contabilidad"}),
    _addon(
        "usuarios-extra", "Usuario extra", "5",
        extra={L.TOTAL_USERS: 1, L.CONCURRENT_USERS: 1},
    ),
    _addon(
        "tpv-extra", "TPV adicional", "10",
        extra={L.ACTIVE_TERMINALS: 1},
        modules={"tpv"},
    ),
    _addon("migracion-datos", "Migracion de datos", "99", recurring=False),
]
