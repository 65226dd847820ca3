"""
HTTP Server

/health answers from process flags only (DB_READY, REDIS_READY) and
never touches trial data, so it stays up while the database is down.
The manual trial check routes are mounted on the same app.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

import database
import redis_client
from app.api.trial_check import setup_trial_routes
from app.core.feature_flags import get_feature_flags
from app.core.metrics import get_metrics
from app.services.identity import SessionIdentityProvider
from app.services.trials.coordinator import TrialRunCoordinator

logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def health_handler(request: web.Request) -> web.Response:
    """
    Response format:
        {
            "status": "ok" | "degraded",
            "db_ready": true | false,
            "redis_ready": true | false,
            "last_trial_run": 1700000000.0 | null,
            "features": {"background_workers_enabled": true, ...},
            "timestamp": "2024-01-01T12:00:00Z"
        }

    Always 200; monitoring tells ok from degraded by the "status" field.
    """
    try:
        db_ready = database.DB_READY
        response_data: Dict[str, Any] = {
            "status": "ok" if db_ready else "degraded",
            "db_ready": db_ready,
            "redis_ready": redis_client.REDIS_READY,
            "last_trial_run": get_metrics().get_gauge("trial_last_run_timestamp"),
            "features": get_feature_flags().as_dict(),
            "timestamp": _utc_timestamp(),
        }
        return web.json_response(response_data, status=200)
    except Exception as e:
        logger.exception(f"Error in health endpoint: {e}")
        return web.json_response(
            {
                "status": "degraded",
                "db_ready": False,
                "redis_ready": False,
                "timestamp": _utc_timestamp(),
                "error": "Health check error",
            },
            status=200,
        )


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus text format"""
    return web.Response(text=get_metrics().render_text(), content_type="text/plain", charset="utf-8")


def create_app(
    coordinator: Optional[TrialRunCoordinator] = None,
    identity_provider: Optional[SessionIdentityProvider] = None,
) -> web.Application:
    """aiohttp app with /health, /metrics and (given a coordinator) the trial routes"""
    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)

    async def root_handler(request: web.Request) -> web.Response:
        return web.json_response({"service": "trial-lifecycle", "health": "/health"})

    app.router.add_get("/", root_handler)

    if coordinator is not None:
        setup_trial_routes(app, coordinator, identity_provider or SessionIdentityProvider())

    return app


async def start_health_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    coordinator: Optional[TrialRunCoordinator] = None,
) -> web.AppRunner:
    """
    Start the HTTP server.

    Returns:
        AppRunner (call cleanup() to stop)
    """
    app = create_app(coordinator)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Health check server started on http://{host}:{port}/health")
    return runner


async def health_server_task(
    host: str = "0.0.0.0",
    port: int = 8080,
    coordinator: Optional[TrialRunCoordinator] = None,
):
    """Background task: serve until cancelled."""
    runner = None
    try:
        runner = await start_health_server(host, port, coordinator)
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Health server task cancelled")
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in health server task: {e}")
        raise
    finally:
        if runner:
            try:
                await runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.error(f"Error stopping health server: {e}")
