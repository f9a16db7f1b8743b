"""Tests for Redis-backed idempotency keys and reconciliation claims."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from tagchain_escrow.config import get_settings
from tagchain_escrow.infrastructure import redis_client
from tagchain_escrow.infrastructure.redis_client import RedisClaimLock


@pytest.fixture
def redis() -> AsyncMock:
    return AsyncMock()


class TestClaimLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, redis) -> None:
        redis.set.return_value = True
        redis.get.return_value = "job-1"
        lock = RedisClaimLock(redis, ttl_seconds=60, owner="job-1")

        assert await lock.acquire("abc")
        await lock.release("abc")

        redis.set.assert_awaited_once_with("reconcile:claim:abc", "job-1", ex=60, nx=True)
        redis.delete.assert_awaited_once_with("reconcile:claim:abc")

    @pytest.mark.asyncio
    async def test_claimed_elsewhere(self, redis) -> None:
        redis.set.return_value = None
        lock = RedisClaimLock(redis, ttl_seconds=60, owner="job-1")
        assert not await lock.acquire("abc")

    @pytest.mark.asyncio
    async def test_release_keeps_another_owners_claim(self, redis) -> None:
        redis.get.return_value = "job-2"
        lock = RedisClaimLock(redis, ttl_seconds=60, owner="job-1")

        await lock.release("abc")

        redis.delete.assert_not_awaited()


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_claim_uses_set_nx(self, redis) -> None:
        redis.set.return_value = True
        with patch.object(redis_client, "get_redis", return_value=redis):
            assert await redis_client.claim_idempotency("order-1", "T1")

        redis.set.assert_awaited_once_with(
            "idempotency:order-1",
            "T1",
            ex=get_settings().redis_idempotency_ttl_seconds,
            nx=True,
        )

    @pytest.mark.asyncio
    async def test_duplicate_claim(self, redis) -> None:
        redis.set.return_value = None
        with patch.object(redis_client, "get_redis", return_value=redis):
            assert not await redis_client.claim_idempotency("order-1")

    @pytest.mark.asyncio
    async def test_release(self, redis) -> None:
        with patch.object(redis_client, "get_redis", return_value=redis):
            await redis_client.release_idempotency("order-1")
        redis.delete.assert_awaited_once_with("idempotency:order-1")

    def test_not_initialized(self) -> None:
        assert not redis_client.is_redis_ready()
        with pytest.raises(RuntimeError, match="not initialized"):
            redis_client.get_redis()
