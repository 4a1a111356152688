#!/usr/bin/env python3
"""Initialize the licensing database schema."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from licensing.core.logging import get_logger, setup_logging
from licensing.storage.db import close_engine, init_schema

log = get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    log.info("starting_schema_initialization")

    try:
        await init_schema()
        log.info("schema_initialization_complete")
    except Exception as exc:
        log.error("schema_initialization_failed", error=str(exc))
        raise
    finally:
        await close_engine()


if __name__ == "__main__":
    asyncio.run(main())
