"""Catalog service: read-through cache over the catalog repository."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from licensing.catalog.models import AddOn, Plan
from licensing.core.constants import CATALOG_CACHE_TTL_SECONDS
from licensing.core.interfaces import CatalogRepository
from licensing.core.logging import get_logger

log = get_logger(__name__)


class CatalogService:
    """Plans and add-ons by id or slug.

    The whole catalog is small, so it is loaded in one go and kept until the
    TTL runs out or an administrative edit goes through ``upsert_*``.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        ttl_seconds: float = CATALOG_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._ttl = ttl_seconds
        self._clock = clock
        self._plans_by_id: dict[str, Plan] = {}
        self._plans_by_slug: dict[str, Plan] = {}
        self._addons_by_id: dict[str, AddOn] = {}
        self._addons_by_slug: dict[str, AddOn] = {}
        self._loaded_at: float | None = None

    def invalidate(self) -> None:
        self._loaded_at = None
        log.debug("catalog_cache_invalidated")

    async def _ensure_loaded(self) -> None:
        now = self._clock()
        if self._loaded_at is not None and now - self._loaded_at < self._ttl:
            return
        plans = await self._repository.list_plans()
        addons = await self._repository.list_addons()
        self._plans_by_id = {p.plan_id: p for p in plans}
        self._plans_by_slug = {p.slug: p for p in plans}
        self._addons_by_id = {a.addon_id: a for a in addons}
        self._addons_by_slug = {a.slug: a for a in addons}
        self._loaded_at = now
        log.debug("catalog_loaded", plans=len(plans), addons=len(addons))

    # ── Plans ────────────────────────────────────────────────────

    async def get_plan(self, plan_id: str) -> Plan | None:
        await self._ensure_loaded()
        return self._plans_by_id.get(plan_id)

    async def get_plan_by_slug(self, slug: str) -> Plan | None:
        await self._ensure_loaded()
        return self._plans_by_slug.get(slug)

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        await self._ensure_loaded()
        plans = sorted(self._plans_by_id.values(), key=lambda p: p.monthly_price)
        return [p for p in plans if p.active or not active_only]

    # ── Add-ons ──────────────────────────────────────────────────

    async def get_addon(self, addon_id: str) -> AddOn | None:
        await self._ensure_loaded()
        return self._addons_by_id.get(addon_id)

    async def get_addon_by_slug(self, slug: str) -> AddOn | None:
        await self._ensure_loaded()
        return self._addons_by_slug.get(slug)

    async def addons_by_slug(self) -> dict[str, AddOn]:
        await self._ensure_loaded()
        return dict(self._addons_by_slug)

    async def list_addons(self, active_only: bool = True) -> list[AddOn]:
        await self._ensure_loaded()
        return [a for a in self._addons_by_id.values() if a.active or not active_only]

    # ── Administrative edits ─────────────────────────────────────

    async def upsert_plan(self, plan: Plan) -> Plan:
        """Store a plan; an edit to an existing slug gets the next version."""
        await self._ensure_loaded()
        current = self._plans_by_slug.get(plan.slug)
        if current is not None:
            plan = replace(plan, plan_id=current.plan_id, version=current.version + 1)
        stored = await self._repository.upsert_plan(plan)
        self.invalidate()
        log.info("catalog_plan_saved", slug=stored.slug, version=stored.version)
        return stored

    async def upsert_addon(self, addon: AddOn) -> AddOn:
        await self._ensure_loaded()
        current = self._addons_by_slug.get(addon.slug)
        if current is not None:
            addon = replace(addon, addon_id=current.addon_id, version=current.version + 1)
        stored = await self._repository.upsert_addon(addon)
        self.invalidate()
        log.info("catalog_addon_saved", slug=stored.slug, version=stored.version)
        return stored

    async def seed(self, plans: Iterable[Plan], addons: Iterable[AddOn]) -> tuple[int, int]:
        """Insert plans and add-ons whose slug is not in the catalog yet."""
        await self._ensure_loaded()
        new_plans = [p for p in plans if p.slug not in self._plans_by_slug]
        new_addons = [a for a in addons if a.slug not in self._addons_by_slug]
        for plan in new_plans:
            await self._repository.upsert_plan(plan)
        for addon in new_addons:
            await self._repository.upsert_addon(addon)
        self.invalidate()
        log.info("catalog_seeded", plans=len(new_plans), addons=len(new_addons))
        return len(new_plans), len(new_addons)
