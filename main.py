import asyncio
import logging
import signal

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging, stop_logging
setup_logging()

import admin_notifications
import config
import database
import health_server
import redis_client
import trial_lifecycle
from app.core.feature_flags import get_feature_flags
from app.core.structured_logger import log_event

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
#
# Standard log fields (logical, not enforced by library):
# - component        (coordinator / worker / http / infra / shutdown)
# - operation        (what is happening)
# - correlation_id   (run id / iteration id)
# - outcome          (success | partial | degraded | failed | skipped)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# Workers log ITERATION_START and ITERATION_END; a run logs one summary line.
# No per-tenant log spam on the success path.
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL = 30  # seconds


async def retry_db_init():
    """Retry init_db() until the database is ready; the scheduler waits on DB_READY."""
    logger.info(f"Starting DB initialization retry task (every {DB_RETRY_INTERVAL}s)")
    while not database.DB_READY:
        try:
            await asyncio.sleep(DB_RETRY_INTERVAL)
            logger.info("Retrying database initialization...")
            if await database.init_db():
                logger.info("DATABASE RECOVERY SUCCESSFUL")
                break
            logger.warning("Database initialization retry failed, will retry later")
        except asyncio.CancelledError:
            logger.info("DB retry task cancelled")
            raise
        except Exception as e:
            logger.warning(f"Database initialization retry error: {type(e).__name__}: {e}")
            logger.debug("Full retry error details:", exc_info=True)
    logger.info("DB retry task finished")


async def main():
    log_event(
        logger,
        component="startup",
        operation="startup_begin",
        outcome="success",
        reason=f"env={config.APP_ENV}",
    )

    try:
        if not await database.init_db():
            logger.error("DB INIT FAILED, RUNNING IN DEGRADED MODE")
    except Exception as e:
        logger.exception("DB INIT FAILED, RUNNING IN DEGRADED MODE")
        logger.error(f"Database initialization error: {type(e).__name__}: {e}")
        database.DB_READY = False

    if config.REDIS_URL:
        if not await redis_client.check_redis_connection():
            logger.warning("Redis unavailable: idempotency keys and run lock fail open")
    else:
        logger.info("REDIS_URL not set: notification idempotency and run lock disabled")

    bot = admin_notifications.create_operator_bot()
    coordinator = trial_lifecycle.build_coordinator(bot)

    background_tasks = []

    background_tasks.append(asyncio.create_task(
        health_server.health_server_task(
            host=config.HEALTH_SERVER_HOST,
            port=config.HEALTH_SERVER_PORT,
            coordinator=coordinator,
        ),
        name="health_server",
    ))

    if not database.DB_READY:
        background_tasks.append(asyncio.create_task(retry_db_init(), name="db_retry"))

    if get_feature_flags().background_workers_enabled:
        background_tasks.append(asyncio.create_task(
            trial_lifecycle.run_trial_scheduler(coordinator),
            name="trial_lifecycle",
        ))
        logger.info("Trial lifecycle scheduler task started")
    else:
        logger.warning("[FEATURE_FLAG] Background workers disabled, trial scheduler not started")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    log_event(logger, component="startup", operation="startup_completed", outcome="success")

    try:
        await stop_event.wait()
    finally:
        log_event(
            logger,
            component="shutdown",
            operation="shutdown_tasks_cancelling",
            outcome="success",
            reason=f"count={len(background_tasks)}",
        )

        for task in background_tasks:
            if not task.done():
                task.cancel()

        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        await redis_client.close_redis_client()

        if bot is not None:
            try:
                await bot.session.close()
                logger.info("Bot session closed")
            except Exception as e:
                logger.debug(f"Error closing bot session: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")
        stop_logging()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service stopped")
