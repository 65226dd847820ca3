"""
Redis distributed lock: the optional trial run mutex.

Only used with TRIAL_RUN_LOCK_ENABLED. Conditional store writes already
make overlapping runs safe; the mutex turns the second run into an
immediate "run_already_in_progress" instead of a full scan of no-ops.

SET key token NX PX takes the lock; a Lua compare-and-delete releases it,
so a run whose lock expired never frees the lock of the run after it.
"""
import asyncio
import logging
import os
import uuid
from typing import Optional

import redis.asyncio as redis

from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_RETRY_INTERVAL = 0.1


class LockNotAcquiredError(RuntimeError):
    """Raised by `async with` when the lock is held elsewhere"""

    def __init__(self, key: str):
        super().__init__(f"Failed to acquire Redis lock: {key}")
        self.key = key


class RedisDistributedLock:
    """
    Example:
        lock = RedisDistributedLock(redis_client, "lock:prod:trial_run", ttl_seconds=900)
        if await lock.acquire(run_id):
            try:
                ...
            finally:
                await lock.release(run_id)
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = 60,
        wait_timeout: float = 0,
    ):
        """
        Args:
            ttl_seconds: Auto-release after this long (a crashed run)
            wait_timeout: Seconds to keep retrying; 0 = single attempt
        """
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")
        self._release_script = None

    def _log(self, operation: str, outcome: str, correlation_id: Optional[str], level: str = "info", **fields) -> None:
        log_event(
            logger,
            component="infra",
            operation=operation,
            outcome=outcome,
            correlation_id=correlation_id,
            level=level,
            key=self.key,
            instance_id=self.instance_id,
            **fields,
        )

    async def acquire(self, correlation_id: Optional[str] = None) -> bool:
        """
        Returns:
            True if taken, False if still held elsewhere after wait_timeout.

        Redis errors propagate; the caller decides whether to fail open.
        """
        if self.acquired:
            return False

        token = str(uuid.uuid4())
        deadline = asyncio.get_running_loop().time() + self.wait_timeout
        attempts = 0

        while True:
            attempts += 1
            if await self.redis_client.set(self.key, token, nx=True, px=self.ttl_seconds * 1000):
                self.token = token
                self.acquired = True
                self._log("lock_acquire", "success", correlation_id, attempts=attempts, ttl_seconds=self.ttl_seconds)
                return True
            if asyncio.get_running_loop().time() >= deadline:
                self._log("lock_acquire", "busy", correlation_id, level="warning", attempts=attempts)
                return False
            await asyncio.sleep(_RETRY_INTERVAL)

    async def release(self, correlation_id: Optional[str] = None) -> None:
        """Release if owned. Idempotent; never raises."""
        token, self.token = self.token, None
        owned, self.acquired = self.acquired, False
        if not owned or not token:
            return

        if self._release_script is None:
            self._release_script = self.redis_client.register_script(RELEASE_SCRIPT)
        try:
            deleted = await self._release_script(keys=[self.key], args=[token])
        except Exception as e:
            self._log("lock_release", "error", correlation_id, level="error", reason=str(e)[:100])
            return
        # 0 means the TTL ran out and someone else may hold the key now
        self._log("lock_release", "success" if deleted else "expired", correlation_id)

    async def __aenter__(self):
        if not await self.acquire():
            raise LockNotAcquiredError(self.key)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False
