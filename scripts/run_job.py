#!/usr/bin/env python3
"""Run one scheduled licensing job by name (for cron).

Usage:
    python scripts/run_job.py reset-monthly
    python scripts/run_job.py sweep-payments
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from licensing.core.logging import get_logger, setup_logging
from licensing.engine import build_engine
from licensing.jobs.scheduler import LicensingJobs
from licensing.storage.db import close_engine

log = get_logger(__name__)

JOBS = {
    "reset-monthly": LicensingJobs.reset_monthly_counters,
    "reset-daily": LicensingJobs.reset_daily_counters,
    "expire-trials": LicensingJobs.expire_overdue_trials,
    "process-renewals": LicensingJobs.process_renewals,
    "sweep-payments": LicensingJobs.sweep_unresolved_payments,
}


async def main(job_name: str) -> None:
    settings = get_settings()
    setup_logging(json_output=settings.log_json, level=settings.log_level)

    engine = await build_engine(settings)
    try:
        log.info("job_starting", job=job_name)
        result = await JOBS[job_name](engine.jobs)
        log.info("job_completed", job=job_name, result=result)
    except Exception as exc:
        log.error("job_failed", job=job_name, error=str(exc))
        raise
    finally:
        await engine.aclose()
        await close_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a scheduled licensing job")
    parser.add_argument("job", choices=sorted(JOBS))
    args = parser.parse_args()
    asyncio.run(main(args.job))
