#!/usr/bin/env python3
"""Insert the default plans and add-ons that are not in the catalog yet."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from licensing.catalog.registry import CatalogService
from licensing.catalog.seed import DEFAULT_ADDONS, DEFAULT_PLANS
from licensing.core.logging import get_logger, setup_logging
from licensing.storage.db import close_engine, get_engine
from licensing.storage.sql import SqlCatalogRepository

log = get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    setup_logging(json_output=settings.log_json, level=settings.log_level)

    try:
        catalog = CatalogService(SqlCatalogRepository(await get_engine()))
        plans, addons = await catalog.seed(DEFAULT_PLANS, DEFAULT_ADDONS)
        log.info("seed_complete", plans=plans, addons=addons)
    finally:
        await close_engine()


if __name__ == "__main__":
    asyncio.run(main())
