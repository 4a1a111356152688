"""Tests for the tenant lock backends."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from licensing.core.exceptions import StorageError
from licensing.core.locks import LocalTenantLocks, RedisTenantLocks


def _redis(acquired: bool = True) -> tuple[MagicMock, MagicMock]:
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    redis = MagicMock()
    redis.lock.return_value = lock
    return redis, lock


class TestLocalTenantLocks:
    @pytest.mark.asyncio
    async def test_same_tenant_serialized(self) -> None:
        locks = LocalTenantLocks()
        events: list[str] = []

        async def work(name: str) -> None:
            async with locks.hold("c1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(work("a"), work("b"))
        assert events == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_tenants_independent(self) -> None:
        locks = LocalTenantLocks()
        async with locks.hold("c1"):
            async with locks.hold("c2"):
                pass


class TestRedisTenantLocks:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        redis, lock = _redis()
        locks = RedisTenantLocks(redis, timeout=5, blocking_timeout=1)
        async with locks.hold("c1"):
            pass
        redis.lock.assert_called_once_with("license-lock:c1", timeout=5, blocking_timeout=1)
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_acquired(self) -> None:
        redis, lock = _redis(acquired=False)
        locks = RedisTenantLocks(redis, timeout=5, blocking_timeout=1)
        with pytest.raises(StorageError) as excinfo:
            async with locks.hold("c1"):
                pass
        assert excinfo.value.context["company_id"] == "c1"
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_lock_release_tolerated(self) -> None:
        redis, lock = _redis()
        lock.release.side_effect = LockError("not owned")
        locks = RedisTenantLocks(redis, timeout=5, blocking_timeout=1)
        async with locks.hold("c1"):
            pass
        lock.release.assert_awaited_once()
