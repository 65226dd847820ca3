"""
Unit tests for the trial run coordinator.

Tests focus on orchestration:
- Preflight failures abort with zero mutations
- Write-then-notify ordering, single retry, per-tenant isolation
- Conflicts, invariant violations, summary counts
- Manual-run audit entries, run lock, callbacks, metrics
"""
import asyncio
import pytest
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

from app.core.metrics import get_metrics
from app.services.trials.coordinator import TrialRunCoordinator
from app.services.trials.models import LifecycleState, NotificationEvent, RunSummary


@pytest.fixture
def make_coordinator(store, dispatcher, trial_config, now):
    def _make(**kwargs):
        kwargs.setdefault("concurrency", 4)
        kwargs.setdefault("store_timeout", 1)
        kwargs.setdefault("notify_timeout", 1)
        return TrialRunCoordinator(store, dispatcher, trial_config, clock=lambda: now, **kwargs)
    return _make


class TestPreflight:
    """Tests for run preconditions"""

    @pytest.mark.asyncio
    async def test_store_unreachable(self, store, dispatcher, make_record, make_coordinator):
        """Unreachable store fails the run before touching any tenant"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=5))}
        store.ping_error = ConnectionError("connection refused")

        summary = await make_coordinator().run_check()

        assert summary.outcome == "failed"
        assert summary.run_error.startswith("store_unavailable")
        assert summary.trials_checked == 0
        assert store.records["a"].lifecycle_state is LifecycleState.TRIALING
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_dispatcher_unreachable(self, store, dispatcher, make_record, make_coordinator):
        """Unreachable dispatcher fails the run with zero mutations"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=5))}
        dispatcher.ping_error = ConnectionError("smtp down")

        summary = await make_coordinator().run_check()

        assert summary.outcome == "failed"
        assert summary.run_error.startswith("dispatcher_unavailable")
        assert store.records["a"].lifecycle_state is LifecycleState.TRIALING
        assert store.processed == []

    @pytest.mark.asyncio
    async def test_listing_fails(self, store, make_coordinator):
        """A failed read of the trial table counts as store unavailable"""
        store.list_error = ConnectionError("read timeout")

        summary = await make_coordinator().run_check()

        assert summary.run_error.startswith("store_unavailable")

    @pytest.mark.asyncio
    async def test_failed_run_still_reports(self, store, make_coordinator):
        """A failed run still gets a finish time and a summary callback"""
        store.ping_error = ConnectionError("down")
        callback = AsyncMock()

        summary = await make_coordinator(on_run_finished=callback).run_check()

        assert summary.finished_at is not None
        callback.assert_awaited_once_with(summary)


class TestProcessing:
    """Tests for per-tenant processing"""

    @pytest.mark.asyncio
    async def test_transitions_and_counts(self, store, dispatcher, make_record, make_coordinator, now):
        """Each kind of transition lands in the right counter"""
        store.records = {
            r.tenant_id: r for r in [
                make_record("quiet", ends_in=timedelta(days=20)),
                make_record("first", ends_in=timedelta(days=6)),
                make_record("expired", state=LifecycleState.WARNED_1D, ends_in=-timedelta(hours=2)),
                make_record(
                    "reminded",
                    state=LifecycleState.GRACE_PERIOD,
                    ends_in=-timedelta(days=1),
                    grace_ends_at=now + timedelta(days=2),
                    last_grace_reminder_on=date(2024, 3, 14),
                ),
                make_record(
                    "gone",
                    state=LifecycleState.GRACE_PERIOD,
                    ends_in=-timedelta(days=4),
                    grace_ends_at=now - timedelta(days=1),
                ),
            ]
        }

        summary = await make_coordinator().run_check()

        assert summary.outcome == "success"
        assert summary.trials_checked == 5
        assert summary.warnings_sent == 1
        assert summary.expiry_notices_sent == 1
        assert summary.grace_reminders_sent == 1
        assert summary.accounts_suspended == 1
        assert summary.transitions_committed == 3
        assert store.records["first"].lifecycle_state is LifecycleState.WARNED_7D
        assert store.records["expired"].lifecycle_state is LifecycleState.GRACE_PERIOD
        assert store.records["reminded"].last_grace_reminder_on == date(2024, 3, 15)
        assert store.records["gone"].lifecycle_state is LifecycleState.SUSPENDED
        assert dispatcher.events_for("quiet") == []
        assert sorted(store.processed) == ["expired", "first", "gone", "quiet", "reminded"]

    @pytest.mark.asyncio
    async def test_converted_and_suspended_not_loaded(self, store, dispatcher, make_record, make_coordinator, now):
        """Terminal records are not part of a run"""
        store.records = {
            "paid": make_record("paid", state=LifecycleState.CONVERTED, ends_in=timedelta(days=1)),
            "off": make_record(
                "off", state=LifecycleState.SUSPENDED, ends_in=-timedelta(days=9), grace_ends_at=now - timedelta(days=6)
            ),
        }

        summary = await make_coordinator().run_check()

        assert summary.trials_checked == 0
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_second_run_same_day_does_nothing(self, store, dispatcher, make_record, make_coordinator):
        """Repeating the run reports zero new actions"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=2))}
        coordinator = make_coordinator()

        first = await coordinator.run_check()
        second = await coordinator.run_check()

        assert first.warnings_sent == 1
        assert second.trials_checked == 1
        assert second.actions_taken == 0
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_record_flagged(self, store, dispatcher, make_record, make_coordinator):
        """Impossible records are skipped and reported, not repaired"""
        store.records = {
            "broken": make_record("broken", state=LifecycleState.GRACE_PERIOD, ends_in=-timedelta(days=1)),
            "ok": make_record("ok", ends_in=timedelta(days=6)),
        }

        summary = await make_coordinator().run_check()

        assert summary.invariant_violations == 1
        assert summary.outcome == "partial"
        error = summary.per_tenant_errors[0]
        assert error.tenant_id == "broken"
        assert error.stage == "invariant"
        assert error.error_type == "domain_error"
        assert "grace_ends_at_missing" in error.message
        assert store.records["broken"].grace_ends_at is None
        assert summary.warnings_sent == 1


class TestRetries:
    """Tests for the single retry on store and dispatcher calls"""

    @pytest.mark.asyncio
    async def test_write_retried_once(self, store, dispatcher, make_record, make_coordinator):
        """One failed write is retried and succeeds"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        store.write_failures = {"a": 1}

        summary = await make_coordinator().run_check()

        assert store.write_attempts["a"] == 2
        assert summary.per_tenant_errors == []
        assert dispatcher.events_for("a") == [NotificationEvent.FIRST_WARNING]

    @pytest.mark.asyncio
    async def test_write_fails_twice(self, store, dispatcher, make_record, make_coordinator):
        """Two failed writes record an error and send nothing for that tenant"""
        store.records = {
            "a": make_record("a", ends_in=timedelta(days=6)),
            "b": make_record("b", ends_in=timedelta(days=6)),
        }
        store.write_failures = {"a": 2}

        summary = await make_coordinator().run_check()

        assert summary.outcome == "partial"
        assert [e.tenant_id for e in summary.per_tenant_errors] == ["a"]
        assert summary.per_tenant_errors[0].stage == "write"
        assert summary.per_tenant_errors[0].error_type == "infra_error"
        assert store.records["a"].lifecycle_state is LifecycleState.TRIALING
        assert dispatcher.events_for("a") == []
        assert dispatcher.events_for("b") == [NotificationEvent.FIRST_WARNING]
        assert summary.warnings_sent == 1

    @pytest.mark.asyncio
    async def test_notification_retried_once(self, store, dispatcher, make_record, make_coordinator):
        """One failed delivery is retried and counted once"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        dispatcher.failures = {("a", NotificationEvent.FIRST_WARNING): 1}

        summary = await make_coordinator().run_check()

        assert dispatcher.attempts == 2
        assert summary.warnings_sent == 1
        assert summary.per_tenant_errors == []

    @pytest.mark.asyncio
    async def test_notification_gap(self, store, dispatcher, make_record, make_coordinator):
        """Delivery failing twice keeps the committed state and reports a gap"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        dispatcher.failures = {("a", NotificationEvent.FIRST_WARNING): 2}

        summary = await make_coordinator().run_check()

        assert store.records["a"].lifecycle_state is LifecycleState.WARNED_7D
        assert summary.transitions_committed == 1
        assert summary.warnings_sent == 0
        error = summary.per_tenant_errors[0]
        assert error.stage == "notify"
        assert error.event == "first_warning"
        assert get_metrics().get_counter("trial_notification_gaps_total") == 1

    @pytest.mark.asyncio
    async def test_store_timeout_is_tenant_error(self, store, dispatcher, make_record, make_coordinator):
        """A store call exceeding its timeout is a per-tenant error"""
        store.records = {"slow": make_record("slow", ends_in=timedelta(days=6))}

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)
            return True

        store.compare_and_swap_state = hang

        summary = await make_coordinator(store_timeout=0.05).run_check()

        assert summary.outcome == "partial"
        assert summary.per_tenant_errors[0].stage == "write"
        assert summary.per_tenant_errors[0].error_type == "infra_error"
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_write_committed_then_timed_out(self, store, dispatcher, make_record, make_coordinator):
        """A write that committed before timing out is a notification gap, not a conflict"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        store.commit_failures = {"a": 1}

        summary = await make_coordinator().run_check()

        assert store.write_attempts["a"] == 2
        assert store.records["a"].lifecycle_state is LifecycleState.WARNED_7D
        assert summary.conflicts_skipped == 0
        assert summary.warnings_sent == 0
        assert dispatcher.sent == []
        error = summary.per_tenant_errors[0]
        assert error.stage == "notify"
        assert error.event == "first_warning"
        assert error.error_type == "infra_error"
        assert error.message.startswith("OutcomeUnconfirmedError")
        assert get_metrics().get_counter("trial_notification_gaps_total") == 1
        assert get_metrics().get_counter("trial_conflicts_total") == 0

    @pytest.mark.asyncio
    async def test_reminder_claimed_then_timed_out(self, store, dispatcher, make_record, make_coordinator, now):
        """Same for a grace reminder whose claim committed before timing out"""
        store.records = {"g": make_record(
            "g",
            state=LifecycleState.GRACE_PERIOD,
            ends_in=-timedelta(days=1),
            grace_ends_at=now + timedelta(days=2),
        )}
        store.commit_failures = {"g": 1}

        summary = await make_coordinator().run_check()

        assert summary.grace_reminders_sent == 0
        assert summary.conflicts_skipped == 0
        assert [(e.stage, e.event) for e in summary.per_tenant_errors] == [("notify", "grace_reminder")]

    @pytest.mark.asyncio
    async def test_already_delivered_not_counted(self, store, dispatcher, make_record, make_coordinator):
        """A notification the channel reports as already delivered is not counted again"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        dispatcher.already_delivered = {("a", NotificationEvent.FIRST_WARNING)}

        summary = await make_coordinator().run_check()

        assert store.records["a"].lifecycle_state is LifecycleState.WARNED_7D
        assert summary.transitions_committed == 1
        assert summary.warnings_sent == 0
        assert summary.per_tenant_errors == []
        assert get_metrics().get_counter("trial_notifications_total", {"event": "first_warning"}) == 0

    @pytest.mark.asyncio
    async def test_duplicate_on_retry_is_gap(self, store, dispatcher, make_record, make_coordinator):
        """A failed delivery whose retry finds the key still claimed is reported, not counted"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        dispatcher.failures = {("a", NotificationEvent.FIRST_WARNING): 1}
        dispatcher.already_delivered = {("a", NotificationEvent.FIRST_WARNING)}

        summary = await make_coordinator().run_check()

        assert dispatcher.attempts == 2
        assert summary.warnings_sent == 0
        error = summary.per_tenant_errors[0]
        assert error.stage == "notify"
        assert error.event == "first_warning"
        assert error.message.startswith("OutcomeUnconfirmedError")
        assert get_metrics().get_counter("trial_notification_gaps_total") == 1


class TestConflicts:
    """Tests for lost conditional writes"""

    @pytest.mark.asyncio
    async def test_stale_read_is_skipped(self, store, dispatcher, make_record, make_coordinator):
        """A record changed since the read is skipped without notifying"""
        stale = make_record("a", state=LifecycleState.WARNED_3D, ends_in=timedelta(hours=12))
        store.records = {"a": make_record("a", state=LifecycleState.WARNED_1D, ends_in=timedelta(hours=12))}
        store.list_active_trials = AsyncMock(return_value=[stale])

        summary = await make_coordinator().run_check()

        assert summary.conflicts_skipped == 1
        assert summary.transitions_committed == 0
        assert summary.outcome == "success"
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_reminder_already_claimed(self, store, dispatcher, make_record, make_coordinator, now):
        """A grace reminder claimed by another run is not sent again"""
        base = dict(
            state=LifecycleState.GRACE_PERIOD,
            ends_in=-timedelta(days=1),
            grace_ends_at=now + timedelta(days=2),
        )
        stale = make_record("a", last_grace_reminder_on=date(2024, 3, 14), **base)
        store.records = {"a": make_record("a", last_grace_reminder_on=date(2024, 3, 15), **base)}
        store.list_active_trials = AsyncMock(return_value=[stale])

        summary = await make_coordinator().run_check()

        assert summary.conflicts_skipped == 1
        assert summary.grace_reminders_sent == 0
        assert dispatcher.sent == []


class TestReporting:
    """Tests for audit, callbacks and metrics"""

    @pytest.mark.asyncio
    async def test_manual_run_audited(self, store, make_record, make_coordinator):
        """Manual runs write an audit entry with the summary"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}

        summary = await make_coordinator().run_check(triggered_by="operator-7")

        assert summary.trigger_type == "manual"
        action, actor, details = store.audit_log[0]
        assert action == "manual_trial_check"
        assert actor == "operator-7"
        assert details["triggerType"] == "manual"
        assert details["trialsChecked"] == 1
        assert details["warningsSent"] == 1
        assert isinstance(details["executionTimeMs"], int)
        assert details["correlationId"] == summary.run_id

    @pytest.mark.asyncio
    async def test_scheduled_run_not_audited(self, store, make_coordinator):
        """Scheduler runs do not write audit entries"""
        summary = await make_coordinator().run_check()

        assert summary.trigger_type == "scheduler"
        assert store.audit_log == []

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_run(self, store, make_coordinator):
        """A broken audit log never fails the run"""
        store.write_audit_log = AsyncMock(side_effect=ConnectionError("audit table locked"))

        summary = await make_coordinator().run_check(triggered_by="operator-7")

        assert summary.outcome == "success"

    @pytest.mark.asyncio
    async def test_callback_error_swallowed(self, store, make_coordinator):
        """A failing run callback does not change the returned summary"""
        callback = AsyncMock(side_effect=RuntimeError("telegram down"))
        coordinator = make_coordinator(on_run_finished=callback)

        summary = await coordinator.run_check()

        assert summary.outcome == "success"
        assert coordinator.last_summary is summary

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, store, make_record, make_coordinator):
        """Run and transition counters are labelled"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}

        await make_coordinator().run_check()

        metrics = get_metrics()
        assert metrics.get_counter("trial_runs_total", {"trigger": "scheduler", "outcome": "success"}) == 1
        assert metrics.get_counter("trial_transitions_total", {"to_state": "warned_7d"}) == 1
        assert metrics.get_counter("trial_notifications_total", {"event": "first_warning"}) == 1
        assert metrics.get_gauge("trial_last_run_timestamp") is not None

    @pytest.mark.asyncio
    async def test_summary_dict(self, store, make_record, make_coordinator):
        """to_dict uses the operator UI keys"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}

        data = (await make_coordinator().run_check()).to_dict()

        assert data["trialsChecked"] == 1
        assert data["warningsSent"] == 1
        assert data["expiryNoticesSent"] == 0
        assert data["accountsSuspended"] == 0
        assert data["perTenantErrors"] == []
        assert data["startedAt"].endswith("Z")

    def test_execution_time_keys(self, now):
        """Milliseconds under executionTimeMs, seconds under executionTime"""
        summary = RunSummary(run_id="r1", triggered_by="scheduler", started_at=now, execution_time_ms=1234)

        data = summary.to_dict()

        assert data["executionTimeMs"] == 1234
        assert data["executionTime"] == 1.23


class TestRunLock:
    """Tests for the optional run mutex"""

    @pytest.mark.asyncio
    async def test_lock_busy(self, store, dispatcher, make_record, make_coordinator):
        """A held lock fails the run without mutations"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        lock.release = AsyncMock()

        summary = await make_coordinator(run_lock_factory=AsyncMock(return_value=lock)).run_check()

        assert summary.run_error == "run_already_in_progress"
        assert store.records["a"].lifecycle_state is LifecycleState.TRIALING
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_acquired_and_released(self, store, make_record, make_coordinator):
        """The lock is released after the run"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()

        summary = await make_coordinator(run_lock_factory=AsyncMock(return_value=lock)).run_check()

        assert summary.warnings_sent == 1
        lock.release.assert_awaited_once_with(summary.run_id)

    @pytest.mark.asyncio
    async def test_redis_error_fails_open(self, store, make_record, make_coordinator):
        """Redis trouble does not block the run"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}
        factory = AsyncMock(side_effect=ConnectionError("redis down"))

        summary = await make_coordinator(run_lock_factory=factory).run_check()

        assert summary.outcome == "success"
        assert summary.warnings_sent == 1

    @pytest.mark.asyncio
    async def test_no_lock_configured(self, store, make_record, make_coordinator):
        """A factory returning None runs unlocked"""
        store.records = {"a": make_record("a", ends_in=timedelta(days=6))}

        summary = await make_coordinator(run_lock_factory=AsyncMock(return_value=None)).run_check()

        assert summary.warnings_sent == 1
