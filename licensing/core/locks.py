"""Per-tenant locks: in-process (asyncio) or distributed (Redis)."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import LockError

from config.settings import get_settings
from licensing.core.exceptions import StorageError
from licensing.core.interfaces import TenantLocks
from licensing.core.logging import get_logger

log = get_logger(__name__)


class LocalTenantLocks(TenantLocks):
    """One ``asyncio.Lock`` per tenant. Valid for a single process only."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, company_id: str) -> asyncio.Lock:
        lock = self._locks.get(company_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[company_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, company_id: str) -> AsyncIterator[None]:
        async with self._lock_for(company_id):
            yield


class RedisTenantLocks(TenantLocks):
    """Redis-backed lock shared by every worker and API process."""

    def __init__(
        self,
        redis: aioredis.Redis | None = None,
        timeout: float | None = None,
        blocking_timeout: float | None = None,
        prefix: str = "license-lock",
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._timeout = timeout if timeout is not None else settings.lock_timeout_seconds
        self._blocking_timeout = (
            blocking_timeout if blocking_timeout is not None
            else settings.lock_blocking_timeout_seconds
        )
        self._prefix = prefix

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            url = get_settings().redis_url.get_secret_value()
            self._redis = aioredis.from_url(url, decode_responses=True)
            log.info("redis_lock_connected")
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @asynccontextmanager
    async def hold(self, company_id: str) -> AsyncIterator[None]:
        r = await self._get_redis()
        lock = r.lock(
            f"{self._prefix}:{company_id}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise StorageError(
                "could not acquire tenant lock",
                context={"company_id": company_id, "waited": self._blocking_timeout},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lock expired while held; the next writer's version check catches it.
                log.warning("tenant_lock_expired", company_id=company_id)


def build_tenant_locks() -> TenantLocks:
    """Lock backend chosen by ``LOCK_BACKEND``."""
    if get_settings().lock_backend == "redis":
        return RedisTenantLocks()
    return LocalTenantLocks()
