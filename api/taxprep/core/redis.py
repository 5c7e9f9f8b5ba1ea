import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from taxprep.core.config import settings

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def _key(kind: str, ident: object) -> str:
    # Shared Redis with the Celery broker; keep our keys in one namespace
    return f"taxprep:{kind}:{ident}"


# ─── Refresh-token revocation ──────────────────────────────────────────────────

async def blacklist_token(jti: str, ttl_seconds: int) -> None:
    """Revoke a refresh token until it would have expired anyway."""
    if ttl_seconds > 0:
        await get_redis().set(_key("revoked", jti), "1", ex=ttl_seconds)


async def is_blacklisted(jti: str) -> bool:
    return bool(await get_redis().exists(_key("revoked", jti)))


# ─── Login lockout ─────────────────────────────────────────────────────────────

async def record_login_failure(email: str) -> int:
    """Count a failed login; the window starts at the first failure."""
    key = _key("login_failures", email.lower())
    async with get_redis().pipeline(transaction=True) as pipe:
        pipe.incr(key)
        pipe.expire(key, settings.login_lockout_minutes * 60, nx=True)
        count, _ = await pipe.execute()
    return count


async def is_locked_out(email: str) -> bool:
    count = await get_redis().get(_key("login_failures", email.lower()))
    return count is not None and int(count) >= settings.login_max_attempts


async def clear_login_failures(email: str) -> None:
    await get_redis().delete(_key("login_failures", email.lower()))


# ─── Per-tax-return lock ───────────────────────────────────────────────────────
# Aggregate recompute is a read-modify-write of the tax return row, so two
# documents of the same return finishing together must not interleave.

# Entries vanish once no holder or waiter references the lock
_local_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()


@asynccontextmanager
async def tax_return_lock(tax_return_id: uuid.UUID) -> AsyncIterator[None]:
    """Serialize aggregate recomputation for one tax return.

    Uses a Redis lock when `use_redis_locks` is set (multiple API workers),
    otherwise an in-process asyncio lock.
    """
    if settings.use_redis_locks:
        lock = get_redis().lock(
            _key("tax_return_lock", tax_return_id),
            timeout=settings.tax_return_lock_timeout_seconds,
            blocking_timeout=settings.tax_return_lock_timeout_seconds,
        )
        async with lock:
            yield
        return

    local = _local_locks.setdefault(tax_return_id, asyncio.Lock())
    async with local:
        yield
