"""Tests for catalog records and the cached catalog service."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from licensing.catalog.models import Plan
from licensing.catalog.registry import CatalogService
from licensing.catalog.seed import DEFAULT_ADDONS, DEFAULT_PLANS
from licensing.core.types import LimitKey, SubscriptionType
from licensing.storage.memory import InMemoryCatalogRepository


class FakeTime:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


class TestPlan:
    def test_price_by_cycle(self) -> None:
        plan = DEFAULT_PLANS[2]
        assert plan.price_for(SubscriptionType.MONTHLY) == Decimal("19")
        assert plan.price_for(SubscriptionType.ANNUAL) == Decimal("190")

    def test_limit_coerced_to_key_type(self) -> None:
        plan = DEFAULT_PLANS[2]
        assert isinstance(plan.limit_for(LimitKey.STORAGE_GB), float)
        assert isinstance(plan.limit_for(LimitKey.CLIENTS), int)

    def test_limit_below_unlimited_rejected(self) -> None:
        with pytest.raises(ValueError):
            Plan(
                plan_id="p",
                slug="p",
                name="P",
                monthly_price=Decimal("1"),
                annual_price=Decimal("10"),
                limits={LimitKey.CLIENTS: -2},
            )

    def test_negative_price_rejected(self) -> None:
        with pytest.raises(ValueError):
            Plan(plan_id="p", slug="p", name="P", monthly_price=Decimal("-1"), annual_price=Decimal("0"))


class TestCatalogService:
    @pytest.mark.asyncio
    async def test_lookup_by_slug_and_id(self) -> None:
        catalog = CatalogService(InMemoryCatalogRepository(DEFAULT_PLANS, DEFAULT_ADDONS))
        plan = await catalog.get_plan_by_slug("basico")
        assert plan is not None
        assert await catalog.get_plan(plan.plan_id) == plan
        assert await catalog.get_plan_by_slug("nope") is None
        addon = await catalog.get_addon_by_slug("crm")
        assert addon is not None
        assert await catalog.get_addon(addon.addon_id) == addon

    @pytest.mark.asyncio
    async def test_plans_sorted_by_price(self) -> None:
        catalog = CatalogService(InMemoryCatalogRepository(DEFAULT_PLANS, DEFAULT_ADDONS))
        prices = [p.monthly_price for p in await catalog.list_plans()]
        assert prices == sorted(prices)

    @pytest.mark.asyncio
    async def test_inactive_hidden_by_default(self) -> None:
        retired = replace(DEFAULT_PLANS[1], active=False)
        catalog = CatalogService(InMemoryCatalogRepository([retired], []))
        assert await catalog.list_plans() == []
        assert await catalog.list_plans(active_only=False) == [retired]

    @pytest.mark.asyncio
    async def test_cache_until_ttl(self) -> None:
        repo = InMemoryCatalogRepository(DEFAULT_PLANS, [])
        now = FakeTime()
        catalog = CatalogService(repo, ttl_seconds=60, clock=now)
        await catalog.list_plans()

        await repo.upsert_addon(DEFAULT_ADDONS[0])
        assert await catalog.get_addon_by_slug(DEFAULT_ADDONS[0].slug) is None

        now.value = 61
        assert await catalog.get_addon_by_slug(DEFAULT_ADDONS[0].slug) is not None

    @pytest.mark.asyncio
    async def test_upsert_bumps_version(self) -> None:
        catalog = CatalogService(InMemoryCatalogRepository(DEFAULT_PLANS, DEFAULT_ADDONS))
        current = await catalog.get_plan_by_slug("basico")
        assert current is not None
        edited = replace(current, plan_id="ignored", monthly_price=Decimal("39"))
        stored = await catalog.upsert_plan(edited)
        assert stored.version == current.version + 1
        assert stored.plan_id == current.plan_id
        fresh = await catalog.get_plan_by_slug("basico")
        assert fresh is not None
        assert fresh.monthly_price == Decimal("39")

    @pytest.mark.asyncio
    async def test_seed_skips_existing(self) -> None:
        catalog = CatalogService(InMemoryCatalogRepository(DEFAULT_PLANS[:2], []))
        plans, addons = await catalog.seed(DEFAULT_PLANS, DEFAULT_ADDONS)
        assert plans == len(DEFAULT_PLANS) - 2
        assert addons == len(DEFAULT_ADDONS)
        assert len(await catalog.list_plans()) == len(DEFAULT_PLANS)
