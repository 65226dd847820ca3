"""
Trial lifecycle domain types.

TrialRecord is the store's view of one school's trial, Decision is what the
engine wants done with it, RunSummary is what one run reports back.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import config


class LifecycleState(str, Enum):
    TRIALING = "trialing"
    WARNED_7D = "warned_7d"
    WARNED_3D = "warned_3d"
    WARNED_1D = "warned_1d"
    GRACE_PERIOD = "grace_period"
    SUSPENDED = "suspended"
    CONVERTED = "converted"

    @property
    def rank(self) -> int:
        """Position on the forward-only path; converted sits outside it."""
        if self is LifecycleState.CONVERTED:
            return -1
        return LIFECYCLE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.SUSPENDED, LifecycleState.CONVERTED)

    def is_before(self, other: "LifecycleState") -> bool:
        return self is not LifecycleState.CONVERTED and self.rank < other.rank


LIFECYCLE_ORDER: Tuple[LifecycleState, ...] = (
    LifecycleState.TRIALING,
    LifecycleState.WARNED_7D,
    LifecycleState.WARNED_3D,
    LifecycleState.WARNED_1D,
    LifecycleState.GRACE_PERIOD,
    LifecycleState.SUSPENDED,
)

# States that carry grace_ends_at
GRACE_STATES = frozenset({LifecycleState.GRACE_PERIOD, LifecycleState.SUSPENDED})

# States loaded by a run
ACTIVE_STATES: Tuple[LifecycleState, ...] = (
    LifecycleState.TRIALING,
    LifecycleState.WARNED_7D,
    LifecycleState.WARNED_3D,
    LifecycleState.WARNED_1D,
    LifecycleState.GRACE_PERIOD,
)


class NotificationEvent(str, Enum):
    FIRST_WARNING = "first_warning"
    SECOND_WARNING = "second_warning"
    FINAL_WARNING = "final_warning"
    TRIAL_EXPIRED_GRACE_STARTED = "trial_expired_grace_started"
    GRACE_REMINDER = "grace_reminder"
    ACCOUNT_SUSPENDED = "account_suspended"

    @property
    def is_warning(self) -> bool:
        return self in WARNING_EVENTS


WARNING_EVENTS = frozenset({
    NotificationEvent.FIRST_WARNING,
    NotificationEvent.SECOND_WARNING,
    NotificationEvent.FINAL_WARNING,
})


@dataclass(frozen=True)
class TrialConfig:
    """
    Lifecycle timings.

    warning_days are the offsets (days before trial end) of the first,
    second and final warning, in that order.
    """
    warning_days: Tuple[int, int, int] = (7, 3, 1)
    grace_days: int = 3
    trial_length_days: int = 30
    grace_reminders_enabled: bool = True

    def __post_init__(self):
        days = tuple(self.warning_days)
        if len(days) != 3:
            raise ValueError(f"warning_days must have exactly 3 values, got {days}")
        if any(d <= 0 for d in days):
            raise ValueError(f"warning_days must be positive, got {days}")
        if not (days[0] > days[1] > days[2]):
            raise ValueError(f"warning_days must be strictly decreasing, got {days}")
        if days[0] > self.trial_length_days:
            raise ValueError(
                f"first warning ({days[0]}d) cannot precede trial start ({self.trial_length_days}d trial)"
            )
        if self.grace_days < 0:
            raise ValueError(f"grace_days must be >= 0, got {self.grace_days}")
        object.__setattr__(self, "warning_days", days)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_days)

    def warning_offset(self, state: LifecycleState) -> timedelta:
        """Offset before trial end at which `state` is entered."""
        index = {
            LifecycleState.WARNED_7D: 0,
            LifecycleState.WARNED_3D: 1,
            LifecycleState.WARNED_1D: 2,
        }[state]
        return timedelta(days=self.warning_days[index])

    @classmethod
    def from_config(cls) -> "TrialConfig":
        return cls(
            warning_days=config.TRIAL_WARNING_DAYS,
            grace_days=config.TRIAL_GRACE_DAYS,
            trial_length_days=config.TRIAL_LENGTH_DAYS,
            grace_reminders_enabled=config.TRIAL_GRACE_REMINDERS_ENABLED,
        )


@dataclass(frozen=True)
class TrialRecord:
    tenant_id: str
    trial_started_at: datetime
    trial_ends_at: Optional[datetime]
    lifecycle_state: LifecycleState
    grace_ends_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None
    last_grace_reminder_on: Optional[date] = None
    # Recipient metadata, not used by the engine
    school_name: Optional[str] = None
    admin_id: Optional[str] = None
    admin_name: Optional[str] = None
    admin_email: Optional[str] = None


class DecisionKind(str, Enum):
    NOOP = "noop"
    TRANSITION = "transition"
    REMINDER = "reminder"
    INVALID = "invalid"


@dataclass(frozen=True)
class Decision:
    """
    Engine output for one record.

    extra_fields are written together with the new state
    (grace_ends_at, last_transition_at, last_grace_reminder_on).
    """
    kind: DecisionKind
    new_state: Optional[LifecycleState] = None
    notify: Optional[NotificationEvent] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    extra_fields: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @classmethod
    def noop(cls, reason: Optional[str] = None) -> "Decision":
        return cls(kind=DecisionKind.NOOP, reason=reason)

    @classmethod
    def transition(
        cls,
        new_state: LifecycleState,
        notify: Optional[NotificationEvent],
        payload: Optional[Dict[str, Any]] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> "Decision":
        return cls(
            kind=DecisionKind.TRANSITION,
            new_state=new_state,
            notify=notify,
            payload=payload or {},
            extra_fields=extra_fields or {},
        )

    @classmethod
    def reminder(cls, payload: Dict[str, Any], extra_fields: Dict[str, Any]) -> "Decision":
        return cls(
            kind=DecisionKind.REMINDER,
            notify=NotificationEvent.GRACE_REMINDER,
            payload=payload,
            extra_fields=extra_fields,
        )

    @classmethod
    def invalid(cls, reason: str) -> "Decision":
        return cls(kind=DecisionKind.INVALID, reason=reason)

    @property
    def is_noop(self) -> bool:
        return self.kind is DecisionKind.NOOP


SCHEDULER_TRIGGER = "scheduler"


@dataclass
class TenantError:
    tenant_id: str
    stage: str  # "invariant" | "write" | "notify"
    error_type: str
    message: str
    event: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "tenantId": self.tenant_id,
            "stage": self.stage,
            "errorType": self.error_type,
            "message": self.message,
        }
        if self.event is not None:
            data["event"] = self.event
        return data


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


@dataclass
class RunSummary:
    run_id: str
    triggered_by: str
    started_at: datetime
    trials_checked: int = 0
    warnings_sent: int = 0
    expiry_notices_sent: int = 0
    accounts_suspended: int = 0
    grace_reminders_sent: int = 0
    transitions_committed: int = 0
    conflicts_skipped: int = 0
    invariant_violations: int = 0
    execution_time_ms: int = 0
    finished_at: Optional[datetime] = None
    run_error: Optional[str] = None
    per_tenant_errors: List[TenantError] = field(default_factory=list)

    @property
    def trigger_type(self) -> str:
        return "scheduler" if self.triggered_by == SCHEDULER_TRIGGER else "manual"

    @property
    def outcome(self) -> str:
        if self.run_error:
            return "failed"
        if self.per_tenant_errors:
            return "partial"
        return "success"

    @property
    def actions_taken(self) -> int:
        return self.transitions_committed + self.grace_reminders_sent

    def record_error(self, error: TenantError) -> None:
        self.per_tenant_errors.append(error)

    def to_dict(self) -> Dict[str, Any]:
        """Operator UI / HTTP representation."""
        return {
            "runId": self.run_id,
            "triggeredBy": self.triggered_by,
            "triggerType": self.trigger_type,
            "outcome": self.outcome,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "trialsChecked": self.trials_checked,
            "warningsSent": self.warnings_sent,
            "expiryNoticesSent": self.expiry_notices_sent,
            "accountsSuspended": self.accounts_suspended,
            "graceRemindersSent": self.grace_reminders_sent,
            "conflictsSkipped": self.conflicts_skipped,
            "invariantViolations": self.invariant_violations,
            "executionTimeMs": self.execution_time_ms,
            # Seconds, for the results dialog
            "executionTime": round(self.execution_time_ms / 1000, 2),
            "runError": self.run_error,
            "perTenantErrors": [e.to_dict() for e in self.per_tenant_errors],
        }
