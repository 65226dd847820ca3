"""
Tests for the manual trial check HTTP endpoint and /health.
"""
import os
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from aiohttp import test_utils

import database
import health_server
from app.services.identity import AuthenticationError, AuthorizationError
from app.services.trials.coordinator import TrialRunCoordinator
from app.services.trials.models import LifecycleState


@pytest.fixture
def coordinator(store, dispatcher, trial_config, now):
    return TrialRunCoordinator(store, dispatcher, trial_config, clock=lambda: now)


def _identity(operator_id="op-1", error=None):
    identity = AsyncMock()
    if error is not None:
        identity.resolve_operator = AsyncMock(side_effect=error)
    else:
        identity.resolve_operator = AsyncMock(return_value=operator_id)
    return identity


def _client(coordinator, identity):
    app = health_server.create_app(coordinator, identity)
    return test_utils.TestClient(test_utils.TestServer(app))


class TestTrialCheckEndpoint:
    """Tests for POST /admin/trials/check"""

    @pytest.mark.asyncio
    async def test_runs_and_returns_summary(self, store, make_record, coordinator):
        """Operators get the run summary back"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        identity = _identity("op-1")

        async with _client(coordinator, identity) as client:
            resp = await client.post("/admin/trials/check", headers={"Authorization": "Bearer tok-1"})
            body = await resp.json()

        assert resp.status == 200
        assert body["triggeredBy"] == "op-1"
        assert body["triggerType"] == "manual"
        assert body["trialsChecked"] == 1
        assert body["warningsSent"] == 1
        assert isinstance(body["executionTimeMs"], int)
        assert body["executionTime"] == round(body["executionTimeMs"] / 1000, 2)
        identity.resolve_operator.assert_awaited_once_with("tok-1")
        assert store.records["a"].lifecycle_state is LifecycleState.WARNED_7D
        assert store.audit_log[0][0] == "manual_trial_check"

    @pytest.mark.asyncio
    async def test_unauthenticated(self, store, coordinator):
        """Missing or invalid session is 401 and nothing runs"""
        identity = _identity(error=AuthenticationError("missing session token"))

        async with _client(coordinator, identity) as client:
            resp = await client.post("/admin/trials/check")

        assert resp.status == 401
        assert coordinator.last_summary is None

    @pytest.mark.asyncio
    async def test_forbidden_is_audited(self, store, coordinator):
        """Non-operators get 403 and the attempt is audited"""
        identity = _identity(error=AuthorizationError("sa-9", "school_admin"))

        async with _client(coordinator, identity) as client:
            resp = await client.post("/admin/trials/check", headers={"Authorization": "Bearer tok-2"})

        assert resp.status == 403
        assert coordinator.last_summary is None
        action, actor, details = store.audit_log[0]
        assert action == "trial_check_denied"
        assert actor == "sa-9"
        assert details["role"] == "school_admin"

    @pytest.mark.asyncio
    async def test_failed_run_is_503(self, store, coordinator):
        """A run that could not start answers 503 with the summary"""
        store.ping_error = ConnectionError("db down")

        async with _client(coordinator, _identity()) as client:
            resp = await client.post("/admin/trials/check", headers={"Authorization": "Bearer tok-1"})
            body = await resp.json()

        assert resp.status == 503
        assert body["outcome"] == "failed"
        assert body["runError"].startswith("store_unavailable")

    @pytest.mark.asyncio
    async def test_kill_switch(self, store, coordinator):
        """Disabled manual checks answer 503 without running"""
        with patch.dict(os.environ, {"FEATURE_MANUAL_TRIAL_CHECK_ENABLED": "false"}):
            async with _client(coordinator, _identity()) as client:
                resp = await client.post("/admin/trials/check", headers={"Authorization": "Bearer tok-1"})

        assert resp.status == 503
        assert coordinator.last_summary is None


class TestLastRunEndpoint:
    """Tests for GET /admin/trials/last-run"""

    @pytest.mark.asyncio
    async def test_no_run_yet(self, coordinator):
        """404 before the first run"""
        async with _client(coordinator, _identity()) as client:
            resp = await client.get("/admin/trials/last-run", headers={"Authorization": "Bearer tok-1"})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_returns_last_summary(self, coordinator):
        """Latest summary is served after a run"""
        summary = await coordinator.run_check()

        async with _client(coordinator, _identity()) as client:
            resp = await client.get("/admin/trials/last-run", headers={"Authorization": "Bearer tok-1"})
            body = await resp.json()

        assert resp.status == 200
        assert body["runId"] == summary.run_id


class TestHealthEndpoint:
    """Tests for GET /health"""

    @pytest.mark.asyncio
    async def test_degraded_without_db(self):
        """Health answers 200 with degraded status while the DB is down"""
        with patch.object(database, "DB_READY", False):
            async with test_utils.TestClient(test_utils.TestServer(health_server.create_app())) as client:
                resp = await client.get("/health")
                body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "degraded"
        assert body["db_ready"] is False

    @pytest.mark.asyncio
    async def test_ok_with_db(self):
        """Health reports ok once the DB is ready"""
        with patch.object(database, "DB_READY", True):
            async with test_utils.TestClient(test_utils.TestServer(health_server.create_app())) as client:
                body = await (await client.get("/health")).json()

        assert body["status"] == "ok"

    @pytest.mark.asyncio
    async def test_trial_routes_need_coordinator(self):
        """Without a coordinator only health routes exist"""
        async with test_utils.TestClient(test_utils.TestServer(health_server.create_app())) as client:
            resp = await client.post("/admin/trials/check")

        assert resp.status in (404, 405)
