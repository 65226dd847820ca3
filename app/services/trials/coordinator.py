"""
Trial Run Coordinator

One run = one pass of the lifecycle engine over every active trial.

- Store and dispatcher are checked before anything is touched; if either
  is unreachable the run reports failed with zero mutations
- Tenants are processed concurrently under a fixed limit
- Write-then-notify: a notification is only sent after the state write
  committed, so a crash in between loses a notice, never repeats a transition
- A failed write or notification is retried once, then recorded in the
  summary; one tenant never fails the run
- A notification whose boundary crossing was already delivered is skipped
  and not counted
- Writes are conditional on the state the decision was made against; a run
  that lost the race skips the tenant (conflicts_skipped)
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional, Tuple

import config
from app.core.metrics import get_metrics
from app.core.redis_lock import RedisDistributedLock
from app.core.structured_logger import log_event
from app.services.trials.exceptions import (
    InvalidTrialStateError,
    NotificationChannelUnavailableError,
    OutcomeUnconfirmedError,
    RunAlreadyInProgressError,
    RunPreconditionError,
    TrialStoreUnavailableError,
)
from app.services.trials.models import (
    Decision,
    DecisionKind,
    LifecycleState,
    NotificationEvent,
    RunSummary,
    SCHEDULER_TRIGGER,
    TenantError,
    TrialConfig,
    TrialRecord,
)
from app.services.trials.service import decide, utc_day
from app.services.trials.store import TrialRecordStore
from app.utils.audit import AuditEvent, log_audit_event_safe
from app.utils.logging_helpers import classify_error, generate_correlation_id, set_correlation_id
from app.utils.retry import retry_async

if TYPE_CHECKING:
    from app.services.notifications.service import NotificationDispatcher

logger = logging.getLogger(__name__)

MANUAL_TRIAL_CHECK_ACTION = "manual_trial_check"

# Retry once, immediately
_SINGLE_RETRY = {"retries": 1, "base_delay": 0, "max_delay": 0, "retry_on": (Exception,)}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short_error(e: BaseException) -> str:
    text = str(e)[:200]
    return f"{type(e).__name__}: {text}" if text else type(e).__name__


class TrialRunCoordinator:
    """
    Runs the lifecycle engine over all active trials.

    Example:
        coordinator = TrialRunCoordinator(PostgresTrialStore(), dispatcher, TrialConfig.from_config())
        summary = await coordinator.run_check("scheduler")
    """

    def __init__(
        self,
        store: TrialRecordStore,
        dispatcher: "NotificationDispatcher",
        trial_config: TrialConfig,
        *,
        concurrency: Optional[int] = None,
        store_timeout: Optional[float] = None,
        notify_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
        run_lock_factory: Optional[Callable[[], Awaitable[Optional[RedisDistributedLock]]]] = None,
        on_run_finished: Optional[Callable[[RunSummary], Awaitable[Any]]] = None,
    ):
        """
        Args:
            store: Trial record store
            dispatcher: Notification dispatcher
            trial_config: Lifecycle timings
            concurrency: Max tenants in flight (default TRIAL_RUN_CONCURRENCY)
            store_timeout: Seconds per store call (default TRIAL_STORE_TIMEOUT_SECONDS)
            notify_timeout: Seconds per notification (default TRIAL_NOTIFY_TIMEOUT_SECONDS)
            clock: Source of "now" (aware UTC)
            run_lock_factory: Returns a run mutex, or None to run unlocked
            on_run_finished: Called with every summary (operator alerts)
        """
        self.store = store
        self.dispatcher = dispatcher
        self.trial_config = trial_config
        self.concurrency = concurrency or config.TRIAL_RUN_CONCURRENCY
        self.store_timeout = store_timeout if store_timeout is not None else config.TRIAL_STORE_TIMEOUT_SECONDS
        self.notify_timeout = notify_timeout if notify_timeout is not None else config.TRIAL_NOTIFY_TIMEOUT_SECONDS
        self.clock = clock
        self.run_lock_factory = run_lock_factory
        self.on_run_finished = on_run_finished
        self.last_summary: Optional[RunSummary] = None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_check(self, triggered_by: str = SCHEDULER_TRIGGER) -> RunSummary:
        """
        Execute one lifecycle run.

        Args:
            triggered_by: "scheduler" or the operator id of a manual run

        Returns:
            RunSummary, only after every tenant was processed (or the run
            failed before touching anything). Never raises for store,
            dispatcher or tenant failures.
        """
        run_id = generate_correlation_id()
        set_correlation_id(run_id)
        summary = RunSummary(run_id=run_id, triggered_by=triggered_by, started_at=self.clock())
        started = time.monotonic()

        log_event(
            logger,
            component="coordinator",
            operation="run_check",
            correlation_id=run_id,
            outcome="started",
            triggered_by=triggered_by,
        )

        lock = None
        try:
            lock = await self._acquire_run_lock(run_id)
            await self._scan(summary)
        except RunPreconditionError as e:
            summary.run_error = str(e)
        except Exception as e:
            logger.exception(f"TRIAL_RUN_UNEXPECTED_ERROR [run_id={run_id}]")
            summary.run_error = f"unexpected_error: {_short_error(e)}"
        finally:
            if lock is not None:
                await lock.release(run_id)

        summary.finished_at = self.clock()
        summary.execution_time_ms = int((time.monotonic() - started) * 1000)
        await self._finish(summary)
        return summary

    async def _acquire_run_lock(self, run_id: str) -> Optional[RedisDistributedLock]:
        if self.run_lock_factory is None:
            return None
        try:
            lock = await self.run_lock_factory()
            if lock is None:
                return None
            acquired = await lock.acquire(correlation_id=run_id)
        except Exception as e:
            # Conditional writes keep overlapping runs safe without the mutex
            logger.warning(f"TRIAL_RUN_LOCK_UNAVAILABLE [run_id={run_id}, error={_short_error(e)}]")
            return None
        if not acquired:
            raise RunAlreadyInProgressError()
        return lock

    async def _scan(self, summary: RunSummary) -> None:
        now = summary.started_at

        try:
            await asyncio.wait_for(self.store.ping(), self.store_timeout)
        except Exception as e:
            raise TrialStoreUnavailableError(_short_error(e)) from e

        try:
            await asyncio.wait_for(self.dispatcher.ping(), self.notify_timeout)
        except Exception as e:
            raise NotificationChannelUnavailableError(_short_error(e)) from e

        try:
            records = await asyncio.wait_for(self.store.list_active_trials(), self.store_timeout)
        except Exception as e:
            raise TrialStoreUnavailableError(_short_error(e)) from e

        summary.trials_checked = len(records)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(record: TrialRecord) -> None:
            async with semaphore:
                try:
                    await self._process(record, now, summary)
                except Exception as e:
                    logger.exception(f"TRIAL_TENANT_UNEXPECTED_ERROR [tenant={record.tenant_id}]")
                    self._tenant_error(summary, record.tenant_id, "process", e)

        await asyncio.gather(*(guarded(record) for record in records))
        await self._record_processed((r.tenant_id for r in records), now)

    # ------------------------------------------------------------------
    # Per tenant
    # ------------------------------------------------------------------

    async def _process(self, record: TrialRecord, now: datetime, summary: RunSummary) -> None:
        decision = decide(now, record, self.trial_config)

        if decision.kind is DecisionKind.NOOP:
            return

        if decision.kind is DecisionKind.INVALID:
            summary.invariant_violations += 1
            self._tenant_error(
                summary, record.tenant_id, "invariant", InvalidTrialStateError(record.tenant_id, decision.reason)
            )
            return

        if decision.kind is DecisionKind.REMINDER:
            claimed = await self._write(
                summary,
                record,
                lambda: self.store.claim_grace_reminder(record.tenant_id, utc_day(now), now=now),
                decision.notify,
            )
            if not claimed:
                return
        else:
            committed = await self._write(
                summary,
                record,
                lambda: self.store.compare_and_swap_state(
                    record.tenant_id,
                    record.lifecycle_state,
                    decision.new_state,
                    decision.extra_fields,
                    now=now,
                    run_id=summary.run_id,
                ),
                decision.notify,
            )
            if not committed:
                return
            self._count_transition(summary, record, decision)

        if decision.notify is not None:
            await self._notify(summary, record.tenant_id, decision.notify, decision.payload)

    async def _retry_once(self, operation: Callable[[], Awaitable[Any]], timeout: float) -> Tuple[Any, int]:
        """
        Run operation under timeout, retrying once on any error.

        Returns:
            (result, attempts); attempts is 2 only if the first attempt raised
        """
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await asyncio.wait_for(operation(), timeout)

        result = await retry_async(attempt, **_SINGLE_RETRY)
        return result, attempts

    async def _write(
        self,
        summary: RunSummary,
        record: TrialRecord,
        operation: Callable[[], Awaitable[bool]],
        event: Optional[NotificationEvent] = None,
    ) -> bool:
        """
        Conditional write with one immediate retry.

        A retry that finds the state already moved after a failed first
        attempt may be seeing that attempt's own commit (it timed out after
        committing). With a notification pending that is recorded as a gap,
        not a conflict.

        Returns:
            True if committed; False on a lost race or a recorded failure
        """
        try:
            committed, attempts = await self._retry_once(operation, self.store_timeout)
        except Exception as e:
            self._tenant_error(summary, record.tenant_id, "write", e)
            return False

        if not committed and attempts > 1 and event is not None:
            get_metrics().increment_counter("trial_notification_gaps_total")
            self._tenant_error(
                summary,
                record.tenant_id,
                "notify",
                OutcomeUnconfirmedError(record.tenant_id, "state write"),
                event=event.value,
            )
            return False

        if not committed:
            summary.conflicts_skipped += 1
            get_metrics().increment_counter("trial_conflicts_total")
            log_event(
                logger,
                component="coordinator",
                operation="trial_write",
                correlation_id=summary.run_id,
                outcome="conflict",
                tenant_id=record.tenant_id,
                reason="state_changed_since_read",
                from_state=record.lifecycle_state.value,
            )
        return bool(committed)

    def _count_transition(self, summary: RunSummary, record: TrialRecord, decision: Decision) -> None:
        summary.transitions_committed += 1
        if decision.new_state is LifecycleState.SUSPENDED:
            summary.accounts_suspended += 1
        get_metrics().increment_counter("trial_transitions_total", labels={"to_state": decision.new_state.value})
        log_event(
            logger,
            component="coordinator",
            operation="trial_transition",
            correlation_id=summary.run_id,
            outcome="committed",
            tenant_id=record.tenant_id,
            from_state=record.lifecycle_state.value,
            to_state=decision.new_state.value,
        )

    async def _notify(
        self,
        summary: RunSummary,
        tenant_id: str,
        event: NotificationEvent,
        payload: dict,
    ) -> bool:
        try:
            delivered, attempts = await self._retry_once(
                lambda: self.dispatcher.notify(tenant_id, event, payload),
                self.notify_timeout,
            )
            if not delivered and attempts > 1:
                # The first attempt failed yet its idempotency key survived
                raise OutcomeUnconfirmedError(tenant_id, "notification")
        except Exception as e:
            get_metrics().increment_counter("trial_notification_gaps_total")
            self._tenant_error(summary, tenant_id, "notify", e, event=event.value)
            return False

        if not delivered:
            log_event(
                logger,
                component="coordinator",
                operation="notify",
                correlation_id=summary.run_id,
                outcome="skipped",
                tenant_id=tenant_id,
                reason="already_delivered",
                event=event.value,
            )
            return False

        if event.is_warning:
            summary.warnings_sent += 1
        elif event is NotificationEvent.TRIAL_EXPIRED_GRACE_STARTED:
            summary.expiry_notices_sent += 1
        elif event is NotificationEvent.GRACE_REMINDER:
            summary.grace_reminders_sent += 1
        get_metrics().increment_counter("trial_notifications_total", labels={"event": event.value})
        return True

    def _tenant_error(
        self,
        summary: RunSummary,
        tenant_id: str,
        stage: str,
        error: BaseException,
        event: Optional[str] = None,
    ) -> None:
        error_type = classify_error(error)
        summary.record_error(TenantError(
            tenant_id=tenant_id,
            stage=stage,
            error_type=error_type,
            message=_short_error(error),
            event=event,
        ))
        get_metrics().increment_counter("trial_tenant_errors_total", labels={"stage": stage})
        log_event(
            logger,
            component="coordinator",
            operation=f"trial_{stage}",
            correlation_id=summary.run_id,
            outcome="failed",
            tenant_id=tenant_id,
            reason=_short_error(error),
            level="warning" if stage == "invariant" else "error",
            error_type=error_type,
            event=event,
        )

    async def _record_processed(self, tenant_ids: Iterable[str], now: datetime) -> None:
        try:
            await asyncio.wait_for(self.store.record_processed(list(tenant_ids), now), self.store_timeout)
        except Exception as e:
            logger.warning(f"TRIAL_RECORD_PROCESSED_FAILED [error={_short_error(e)}]")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _finish(self, summary: RunSummary) -> None:
        metrics = get_metrics()
        metrics.increment_counter(
            "trial_runs_total", labels={"trigger": summary.trigger_type, "outcome": summary.outcome}
        )
        metrics.record_timer("trial_run_duration_ms", float(summary.execution_time_ms))
        metrics.set_gauge("trial_last_run_timestamp", summary.finished_at.timestamp())

        if summary.trigger_type == "manual":
            details = summary.to_dict()
            details["triggerType"] = "manual"
            await log_audit_event_safe(
                self.store,
                AuditEvent(action=MANUAL_TRIAL_CHECK_ACTION, actor_id=summary.triggered_by, details=details),
            )

        log_event(
            logger,
            component="coordinator",
            operation="run_check",
            correlation_id=summary.run_id,
            outcome=summary.outcome,
            duration_ms=summary.execution_time_ms,
            reason=summary.run_error,
            level={"failed": "error", "partial": "warning"}.get(summary.outcome, "info"),
            triggered_by=summary.triggered_by,
            trials_checked=summary.trials_checked,
            warnings_sent=summary.warnings_sent,
            expiry_notices_sent=summary.expiry_notices_sent,
            accounts_suspended=summary.accounts_suspended,
            grace_reminders_sent=summary.grace_reminders_sent,
            conflicts_skipped=summary.conflicts_skipped,
            tenant_errors=len(summary.per_tenant_errors),
        )

        self.last_summary = summary

        if self.on_run_finished is not None:
            try:
                await self.on_run_finished(summary)
            except Exception as e:
                logger.error(f"TRIAL_RUN_CALLBACK_FAILED [run_id={summary.run_id}, error={_short_error(e)}]")
