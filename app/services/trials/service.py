"""
Trial Lifecycle Engine

Pure decision logic: (now, record, config) -> Decision.

- No I/O
- No logging
- Never raises for a bad record (returns Decision.invalid instead)

Rules are evaluated latest-boundary-first so a record the job has not seen
for several days catches up in one step with a single notification. The
forward-only state guard on every rule prevents a warning from being sent
twice, and the one-transition-per-UTC-day guard keeps a deeply overdue
record from collapsing warning, expiry and suspension into one run.
"""

import math
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from app.services.trials.models import (
    Decision,
    DecisionKind,
    GRACE_STATES,
    LifecycleState,
    NotificationEvent,
    TrialConfig,
    TrialRecord,
)

ONE_DAY = timedelta(days=1)


# ====================================================================================
# Time helpers
# ====================================================================================

def utc_day(moment: datetime) -> date:
    """UTC calendar day of an aware timestamp."""
    return moment.astimezone(timezone.utc).date()


def days_left(now: datetime, until: Optional[datetime]) -> int:
    """Whole days remaining until `until`, rounded up; 0 once passed."""
    if until is None:
        return 0
    seconds = (until - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / ONE_DAY.total_seconds())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ====================================================================================
# Invariants
# ====================================================================================

def check_invariants(record: TrialRecord) -> Optional[str]:
    """
    Reason the record is in an impossible state, or None if consistent.

    Impossible records are skipped and flagged, never repaired.
    """
    if record.trial_ends_at is None:
        return "missing_trial_ends_at"
    if record.trial_started_at is not None and record.trial_ends_at < record.trial_started_at:
        return "trial_ends_before_start"
    in_grace = record.lifecycle_state in GRACE_STATES
    if in_grace and record.grace_ends_at is None:
        return "grace_ends_at_missing"
    if not in_grace and record.lifecycle_state is not LifecycleState.CONVERTED and record.grace_ends_at is not None:
        return "grace_ends_at_set_before_grace"
    return None


# ====================================================================================
# Payloads
# ====================================================================================

def build_payload(
    record: TrialRecord,
    event: NotificationEvent,
    now: datetime,
    boundary: str,
    grace_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Notification payload handed to the dispatcher.

    `boundary` identifies the boundary crossing (target state, or the day for
    grace reminders) and is part of the delivery idempotency key.
    """
    grace_end = grace_ends_at or record.grace_ends_at
    if event in (NotificationEvent.TRIAL_EXPIRED_GRACE_STARTED, NotificationEvent.GRACE_REMINDER):
        remaining = days_left(now, grace_end)
    elif event is NotificationEvent.ACCOUNT_SUSPENDED:
        remaining = 0
    else:
        remaining = days_left(now, record.trial_ends_at)

    return {
        "boundary": boundary,
        "days_left": remaining,
        "trial_ends_at": _iso(record.trial_ends_at),
        "grace_ends_at": _iso(grace_end),
        "school_name": record.school_name,
        "admin_id": record.admin_id,
        "admin_name": record.admin_name,
        "admin_email": record.admin_email,
    }


def _transition(
    record: TrialRecord,
    now: datetime,
    new_state: LifecycleState,
    event: NotificationEvent,
    **extra: Any,
) -> Decision:
    extra_fields: Dict[str, Any] = {"last_transition_at": now}
    extra_fields.update(extra)
    return Decision.transition(
        new_state,
        event,
        payload=build_payload(record, event, now, new_state.value, extra.get("grace_ends_at")),
        extra_fields=extra_fields,
    )


# ====================================================================================
# Engine
# ====================================================================================

def decide(now: datetime, record: TrialRecord, config: TrialConfig) -> Decision:
    """
    Decide what has to happen to one trial record at `now`.

    Rules, first match wins:
        1. converted                          -> noop
        2. suspended                          -> noop
           impossible record                  -> invalid
           transitioned earlier this UTC day  -> noop
        3. grace_period: grace over           -> suspended (AccountSuspended)
                         else, once a day     -> reminder (GraceReminder)
        4. warned_1d past trial end           -> grace_period (TrialExpiredGraceStarted)
        5. before warned_1d, final window     -> warned_1d (FinalWarning)
        6. before warned_3d, second window    -> warned_3d (SecondWarning)
        7. trialing, first window             -> warned_7d (FirstWarning)
        8. otherwise                          -> noop

    Args:
        now: Current time (timezone-aware)
        record: Trial record as read from the store
        config: Lifecycle timings

    Returns:
        Decision (never raises for record contents)
    """
    state = record.lifecycle_state

    if state is LifecycleState.CONVERTED:
        return Decision.noop("converted")

    if state is LifecycleState.SUSPENDED:
        return Decision.noop("suspended")

    violation = check_invariants(record)
    if violation:
        return Decision.invalid(violation)

    today = utc_day(now)
    if record.last_transition_at is not None and utc_day(record.last_transition_at) == today:
        return Decision.noop("already_transitioned_today")

    trial_ends_at = record.trial_ends_at

    if state is LifecycleState.GRACE_PERIOD:
        if now >= record.grace_ends_at:
            return _transition(record, now, LifecycleState.SUSPENDED, NotificationEvent.ACCOUNT_SUSPENDED)
        if config.grace_reminders_enabled and record.last_grace_reminder_on != today:
            payload = build_payload(record, NotificationEvent.GRACE_REMINDER, now, today.isoformat())
            return Decision.reminder(payload, {"last_grace_reminder_on": today})
        return Decision.noop("grace_period_active")

    if state is LifecycleState.WARNED_1D and now >= trial_ends_at:
        return _transition(
            record,
            now,
            LifecycleState.GRACE_PERIOD,
            NotificationEvent.TRIAL_EXPIRED_GRACE_STARTED,
            grace_ends_at=trial_ends_at + config.grace_period,
            last_grace_reminder_on=today,
        )

    if state.is_before(LifecycleState.WARNED_1D) and now >= trial_ends_at - config.warning_offset(LifecycleState.WARNED_1D):
        return _transition(record, now, LifecycleState.WARNED_1D, NotificationEvent.FINAL_WARNING)

    if state.is_before(LifecycleState.WARNED_3D) and now >= trial_ends_at - config.warning_offset(LifecycleState.WARNED_3D):
        return _transition(record, now, LifecycleState.WARNED_3D, NotificationEvent.SECOND_WARNING)

    if state is LifecycleState.TRIALING and now >= trial_ends_at - config.warning_offset(LifecycleState.WARNED_7D):
        return _transition(record, now, LifecycleState.WARNED_7D, NotificationEvent.FIRST_WARNING)

    return Decision.noop("no_boundary_crossed")


def apply_decision(record: TrialRecord, decision: Decision, now: datetime) -> TrialRecord:
    """
    Record as it looks after the store committed `decision`.

    Noop and invalid decisions only bump last_processed_at.
    """
    if decision.kind is DecisionKind.TRANSITION:
        return replace(
            record,
            lifecycle_state=decision.new_state,
            last_processed_at=now,
            **decision.extra_fields,
        )
    if decision.kind is DecisionKind.REMINDER:
        return replace(record, last_processed_at=now, **decision.extra_fields)
    return replace(record, last_processed_at=now)


def new_trial_record(
    tenant_id: str,
    started_at: datetime,
    config: TrialConfig,
    **metadata: Any,
) -> TrialRecord:
    """Fresh `trialing` record; trial_ends_at is fixed at creation."""
    return TrialRecord(
        tenant_id=tenant_id,
        trial_started_at=started_at,
        trial_ends_at=started_at + timedelta(days=config.trial_length_days),
        lifecycle_state=LifecycleState.TRIALING,
        **metadata,
    )
