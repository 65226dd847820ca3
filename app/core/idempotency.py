"""
Idempotency keys for trial notifications (Redis SET NX EX).

A key is claimed right before a notice is delivered and released if the
delivery fails, so the coordinator's retry (in the same run or the next
day's) never produces a second notice for one boundary crossing.

Fail-open: with Redis unconfigured or failing every claim is granted and
the store's conditional state write remains the only guard.
"""
import logging
import os
from typing import Optional

import redis.asyncio as redis

import config
import redis_client as shared_redis
from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

NOTIFICATION_KEY_TTL_SECONDS = 48 * 3600


def build_key(environment: str, operation: str, unique_id: str) -> str:
    """idempotency:{environment}:{operation}:{unique_id}"""
    return f"idempotency:{environment}:{operation}:{unique_id}"


class RedisIdempotency:
    """
    Example:
        idempotency = RedisIdempotency(redis_client, "stage", default_ttl_seconds=172800)
        if await idempotency.acquire("trial_notification", "school_1:first_warning:warned_7d"):
            ...deliver...
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        environment: str,
        default_ttl_seconds: int = 86400,
    ):
        """
        Args:
            redis_client: Client to use; None resolves the shared client on each call
            environment: APP_ENV, part of every key
            default_ttl_seconds: Key lifetime when acquire() gets no ttl
        """
        self.redis_client = redis_client
        self.environment = environment
        self.default_ttl_seconds = default_ttl_seconds
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")

    async def _client(self) -> Optional[redis.Redis]:
        if self.redis_client is not None:
            return self.redis_client
        try:
            return await shared_redis.get_redis_client()
        except Exception as e:
            logger.warning(f"IDEMPOTENCY_CLIENT_UNAVAILABLE: {type(e).__name__}: {str(e)[:100]}")
            return None

    def _log(self, operation: str, unique_id: str, outcome: str, level: str = "debug", **fields) -> None:
        log_event(
            logger,
            component="infra",
            operation="idempotency_acquire",
            outcome=outcome,
            level=level,
            operation_type=operation,
            unique_id=unique_id,
            instance_id=self.instance_id,
            **fields,
        )

    async def acquire(
        self,
        operation: str,
        unique_id: str,
        ttl: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Returns:
            True to proceed (key claimed, or Redis unavailable),
            False if the key already exists
        """
        client = await self._client()
        if client is None:
            self._log(operation, unique_id, "granted", reason="redis_unavailable", correlation_id=correlation_id)
            return True

        try:
            claimed = await client.set(
                build_key(self.environment, operation, unique_id),
                "1",
                nx=True,
                ex=ttl if ttl is not None else self.default_ttl_seconds,
            )
        except Exception as e:
            self._log(
                operation, unique_id, "granted", level="error",
                reason=f"redis_error: {str(e)[:100]}", correlation_id=correlation_id,
            )
            return True

        if claimed:
            self._log(operation, unique_id, "granted", correlation_id=correlation_id)
            return True

        self._log(operation, unique_id, "duplicate", level="warning", correlation_id=correlation_id)
        return False

    async def release(self, operation: str, unique_id: str) -> None:
        """Drop a claimed key after a failed delivery. Never raises."""
        client = await self._client()
        if client is None:
            return
        try:
            await client.delete(build_key(self.environment, operation, unique_id))
        except Exception as e:
            logger.error(f"IDEMPOTENCY_RELEASE_FAILED unique_id={unique_id}: {type(e).__name__}: {str(e)[:100]}")


def create_idempotency() -> RedisIdempotency:
    """Notification keys; 48h covers a retry on the next daily run."""
    return RedisIdempotency(
        redis_client=None,
        environment=config.APP_ENV,
        default_ttl_seconds=NOTIFICATION_KEY_TTL_SECONDS,
    )
