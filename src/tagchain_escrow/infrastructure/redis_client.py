"""Redis: idempotency keys for escrow creation and reconciliation claims.

Redis is optional at runtime. Without it, idempotency keys are not enforced
and reconciliation runs without claims (safe with a single job instance).

Usage:
    await init_redis()
    if await claim_idempotency("order-42", "T1"):
        ...
    await close_redis()
"""

from __future__ import annotations

import redis.asyncio as aioredis

from tagchain_escrow.config import get_settings
from tagchain_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis(url: str | None = None) -> aioredis.Redis:
    """Connect and ping. Raises if Redis is unreachable; callers decide whether that is fatal."""
    global _redis_client
    client = aioredis.from_url(url or get_settings().redis_url, decode_responses=True)
    await client.ping()
    _redis_client = client
    # Log the host only; the URL may carry a password.
    pool_kwargs = client.connection_pool.connection_kwargs
    logger.info("redis.connected", host=pool_kwargs.get("host"), db=pool_kwargs.get("db"))
    return client


def get_redis() -> aioredis.Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_ready() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    logger.info("redis.disconnected")


# --- Idempotency Helpers ---


async def claim_idempotency(key: str, value: str = "1") -> bool:
    """Atomically claim an idempotency key.

    Returns True if the key was new (the caller may proceed), False if it
    was already used.
    """
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        f"idempotency:{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a failed request can be retried."""
    redis = get_redis()
    await redis.delete(f"idempotency:{key}")


# --- Reconciliation Claims ---


class RedisClaimLock:
    """Per-log-entry claim so two reconcilers never resubmit the same entry.

    The ledger does not deduplicate, so a double submission would put the
    same event on the topic twice.
    """

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int, owner: str) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._owner = owner

    @staticmethod
    def _key(log_id: str) -> str:
        return f"reconcile:claim:{log_id}"

    async def acquire(self, log_id: str) -> bool:
        return bool(
            await self._redis.set(self._key(log_id), self._owner, ex=self._ttl, nx=True)
        )

    async def release(self, log_id: str) -> None:
        key = self._key(log_id)
        if await self._redis.get(key) == self._owner:
            await self._redis.delete(key)
