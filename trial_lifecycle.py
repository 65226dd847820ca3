"""
Trial lifecycle scheduler.

Runs the trial check once a day at TRIAL_CHECK_TIME_UTC. The loop never
dies on a failed iteration; a run that reports "failed" (store or
dispatcher unreachable) is retried after MINIMUM_SAFE_SLEEP_ON_FAILURE
instead of waiting for the next day.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from aiogram import Bot

import admin_notifications
import config
import database
import redis_client
from app.core.feature_flags import get_feature_flags
from app.core.idempotency import create_idempotency
from app.core.redis_lock import RedisDistributedLock
from app.core.structured_logger import log_event
from app.services.notifications import DatabaseNotificationDispatcher
from app.services.trials import (
    RunAlreadyInProgressError,
    PostgresTrialStore,
    SCHEDULER_TRIGGER,
    TrialConfig,
    TrialRunCoordinator,
)
from app.utils.logging_helpers import (
    classify_error,
    generate_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "trial_lifecycle"

# Singleton guard: one scheduler loop per process
_TRIAL_SCHEDULER_STARTED = False

# Minimum sleep after a failed iteration, prevents tight retry storms
MINIMUM_SAFE_SLEEP_ON_FAILURE = 60  # seconds


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    """Seconds from `now` to the next HH:MM UTC (tomorrow if already passed)."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def run_lock_key() -> str:
    return f"lock:{config.APP_ENV}:trial_run"


async def create_run_lock() -> Optional[RedisDistributedLock]:
    """Run mutex, or None when Redis is not configured."""
    client = await redis_client.get_redis_client()
    if client is None:
        return None
    return RedisDistributedLock(
        redis_client=client,
        key=run_lock_key(),
        ttl_seconds=config.TRIAL_RUN_LOCK_TTL_SECONDS,
        wait_timeout=0,
    )


def build_coordinator(bot: Optional[Bot] = None) -> TrialRunCoordinator:
    """Production wiring: Postgres store, notifications table, operator alerts."""
    trial_config = TrialConfig.from_config()
    dispatcher = DatabaseNotificationDispatcher(
        trial_config,
        idempotency=create_idempotency(),
        bot=bot,
    )

    async def on_run_finished(summary) -> None:
        await admin_notifications.notify_admin_trial_run(bot, summary)

    return TrialRunCoordinator(
        PostgresTrialStore(),
        dispatcher,
        trial_config,
        run_lock_factory=create_run_lock if config.TRIAL_RUN_LOCK_ENABLED else None,
        on_run_finished=on_run_finished,
    )


async def run_trial_scheduler(coordinator: TrialRunCoordinator):
    """
    Scheduler main loop.

    SAFE: singleton guard, repeated calls return immediately.
    """
    global _TRIAL_SCHEDULER_STARTED

    if _TRIAL_SCHEDULER_STARTED:
        logger.warning("Trial lifecycle scheduler already running, skipping duplicate start")
        return

    _TRIAL_SCHEDULER_STARTED = True
    logger.info(
        f"Trial lifecycle scheduler started (daily at "
        f"{config.TRIAL_CHECK_HOUR_UTC:02d}:{config.TRIAL_CHECK_MINUTE_UTC:02d} UTC)"
    )

    iteration_number = 0

    while True:
        delay = seconds_until_next_run(
            datetime.now(timezone.utc),
            config.TRIAL_CHECK_HOUR_UTC,
            config.TRIAL_CHECK_MINUTE_UTC,
        )
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            break

        while True:
            iteration_number += 1
            if await _run_iteration(coordinator, iteration_number):
                break
            try:
                await asyncio.sleep(MINIMUM_SAFE_SLEEP_ON_FAILURE)
            except asyncio.CancelledError:
                return


async def _run_iteration(coordinator: TrialRunCoordinator, iteration_number: int) -> bool:
    """
    One scheduled run.

    Returns:
        True if today's run is done (or deliberately skipped), False to retry soon
    """
    iteration_start_time = time.time()
    correlation_id = log_worker_iteration_start(
        worker_name=WORKER_NAME,
        iteration_number=iteration_number,
        correlation_id=generate_correlation_id(),
    )

    try:
        if not get_feature_flags().background_workers_enabled:
            logger.warning(
                f"[FEATURE_FLAG] Background workers disabled, skipping iteration in {WORKER_NAME} "
                f"(iteration={iteration_number})"
            )
            log_worker_iteration_end(
                worker_name=WORKER_NAME,
                outcome="skipped",
                items_processed=0,
                duration_ms=(time.time() - iteration_start_time) * 1000,
                reason="background_workers_enabled=false",
            )
            return True

        if not database.DB_READY:
            logger.warning(f"[UNAVAILABLE] database not ready, postponing {WORKER_NAME} run")
            log_worker_iteration_end(
                worker_name=WORKER_NAME,
                outcome="degraded",
                items_processed=0,
                error_type="infra_error",
                duration_ms=(time.time() - iteration_start_time) * 1000,
                reason="db_not_ready",
            )
            return False

        summary = await coordinator.run_check(SCHEDULER_TRIGGER)

        log_worker_iteration_end(
            worker_name=WORKER_NAME,
            outcome=summary.outcome,
            items_processed=summary.trials_checked,
            error_type="infra_error" if summary.run_error else None,
            duration_ms=(time.time() - iteration_start_time) * 1000,
            run_id=summary.run_id,
            trigger_correlation_id=correlation_id,
            warnings_sent=summary.warnings_sent,
            expiry_notices_sent=summary.expiry_notices_sent,
            accounts_suspended=summary.accounts_suspended,
            tenant_errors=len(summary.per_tenant_errors),
        )
        if summary.run_error and summary.run_error.startswith(RunAlreadyInProgressError.run_error):
            # Another instance owns today's run
            return True
        return summary.run_error is None

    except asyncio.CancelledError:
        log_event(
            logger,
            component="worker",
            operation=f"{WORKER_NAME}_iteration",
            outcome="cancelled",
        )
        raise
    except Exception as e:
        logger.error(f"{WORKER_NAME}: Unexpected error in scheduler loop: {type(e).__name__}: {str(e)[:100]}")
        logger.debug(f"{WORKER_NAME}: Full traceback for scheduler loop", exc_info=True)
        log_worker_iteration_end(
            worker_name=WORKER_NAME,
            outcome="failed",
            items_processed=0,
            error_type=classify_error(e),
            duration_ms=(time.time() - iteration_start_time) * 1000,
        )
        return False
