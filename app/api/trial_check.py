"""
Manual trial check endpoint.

POST /admin/trials/check     run the lifecycle check now (super admins only)
GET  /admin/trials/last-run  summary of the most recent run in this process
"""
import logging

from aiohttp import web

from app.core.feature_flags import get_feature_flags
from app.services.identity import (
    AuthenticationError,
    AuthorizationError,
    SessionIdentityProvider,
    parse_bearer_token,
)
from app.services.trials.coordinator import TrialRunCoordinator
from app.utils.audit import AuditEvent, log_audit_event_safe

logger = logging.getLogger(__name__)

COORDINATOR_KEY = web.AppKey("trial_coordinator", TrialRunCoordinator)
IDENTITY_KEY = web.AppKey("identity_provider", SessionIdentityProvider)

DENIED_ACTION = "trial_check_denied"


async def _authorize(request: web.Request) -> str:
    """Operator id for the request, or raise the matching HTTP error."""
    coordinator = request.app[COORDINATOR_KEY]
    token = parse_bearer_token(request.headers.get("Authorization"))
    try:
        return await request.app[IDENTITY_KEY].resolve_operator(token)
    except AuthenticationError as e:
        logger.warning(f"TRIAL_CHECK_UNAUTHENTICATED [path={request.path}, reason={e}]")
        raise web.HTTPUnauthorized(
            text='{"error": "unauthorized"}',
            content_type="application/json",
        )
    except AuthorizationError as e:
        logger.warning(f"TRIAL_CHECK_FORBIDDEN [path={request.path}, user={e.user_id}, role={e.role}]")
        await log_audit_event_safe(
            coordinator.store,
            AuditEvent(action=DENIED_ACTION, actor_id=e.user_id, details={"role": e.role, "path": request.path}),
        )
        raise web.HTTPForbidden(
            text='{"error": "forbidden"}',
            content_type="application/json",
        )


async def trial_check_handler(request: web.Request) -> web.Response:
    operator_id = await _authorize(request)

    if not get_feature_flags().manual_trial_check_enabled:
        logger.warning(f"TRIAL_CHECK_DISABLED [operator={operator_id}]")
        return web.json_response({"error": "manual_trial_check_disabled"}, status=503)

    logger.info(f"TRIAL_CHECK_REQUESTED [operator={operator_id}]")
    summary = await request.app[COORDINATOR_KEY].run_check(triggered_by=operator_id)

    status = 503 if summary.outcome == "failed" else 200
    return web.json_response(summary.to_dict(), status=status)


async def last_run_handler(request: web.Request) -> web.Response:
    await _authorize(request)
    summary = request.app[COORDINATOR_KEY].last_summary
    if summary is None:
        return web.json_response({"error": "no_run_yet"}, status=404)
    return web.json_response(summary.to_dict(), status=200)


def setup_trial_routes(
    app: web.Application,
    coordinator: TrialRunCoordinator,
    identity_provider: SessionIdentityProvider,
) -> None:
    app[COORDINATOR_KEY] = coordinator
    app[IDENTITY_KEY] = identity_provider
    app.router.add_post("/admin/trials/check", trial_check_handler)
    app.router.add_get("/admin/trials/last-run", last_run_handler)
    logger.info("Trial check routes registered: POST /admin/trials/check, GET /admin/trials/last-run")
