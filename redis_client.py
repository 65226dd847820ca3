"""
Shared redis.asyncio client.

Two things use Redis here, both optional: the trial run mutex
(TRIAL_RUN_LOCK_ENABLED) and notification idempotency keys. With REDIS_URL
unset get_redis_client() returns None and callers fall back to Postgres
conditional writes alone.
"""
import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

import config
from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_client_lock = asyncio.Lock()

# Updated by check_redis_connection(); read by /health
REDIS_READY: bool = False


def _build_client(url: str) -> redis.Redis:
    pool = redis.ConnectionPool.from_url(
        url,
        decode_responses=True,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT_SECONDS,
        health_check_interval=30,
        max_connections=config.REDIS_MAX_CONNECTIONS,
    )
    # from_pool: the client owns the pool, aclose() disconnects it
    return redis.Redis.from_pool(pool)


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Lazily created client, or None when Redis is not configured.

    Raises:
        redis.RedisError / ValueError: REDIS_URL is malformed
    """
    global _redis_client

    if not config.REDIS_URL:
        return None
    if _redis_client is not None:
        return _redis_client

    async with _client_lock:
        if _redis_client is None:
            _redis_client = _build_client(config.REDIS_URL)
            logger.info("Redis client created (max_connections=%s)", config.REDIS_MAX_CONNECTIONS)
    return _redis_client


async def check_redis_connection() -> bool:
    """PING and refresh REDIS_READY. Never raises."""
    global REDIS_READY

    if not config.REDIS_URL:
        REDIS_READY = False
        return False

    reason = None
    try:
        client = await get_redis_client()
        REDIS_READY = bool(await client.ping())
    except Exception as e:
        REDIS_READY = False
        reason = f"{type(e).__name__}: {str(e)[:100]}"

    log_event(
        logger,
        component="infra",
        operation="redis_ping",
        outcome="success" if REDIS_READY else "degraded",
        reason=reason,
        level="info" if REDIS_READY else "warning",
    )
    return REDIS_READY


async def close_redis_client() -> None:
    """Close the client and its pool. Safe to call twice."""
    global _redis_client, REDIS_READY

    client, _redis_client = _redis_client, None
    REDIS_READY = False
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.warning(f"Error closing Redis client: {type(e).__name__}: {e}")
