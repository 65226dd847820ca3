"""
Trial Service Package
"""

from app.services.trials.coordinator import TrialRunCoordinator
from app.services.trials.exceptions import (
    InvalidTrialStateError,
    NotificationChannelUnavailableError,
    OutcomeUnconfirmedError,
    RunAlreadyInProgressError,
    RunPreconditionError,
    TrialNotFoundError,
    TrialServiceError,
    TrialStoreUnavailableError,
    TrialStoreWriteError,
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
from app.services.trials.service import (
    apply_decision,
    check_invariants,
    days_left,
    decide,
    new_trial_record,
)
from app.services.trials.store import PostgresTrialStore, TrialRecordStore

__all__ = [
    "TrialRunCoordinator",
    "InvalidTrialStateError",
    "NotificationChannelUnavailableError",
    "OutcomeUnconfirmedError",
    "RunAlreadyInProgressError",
    "RunPreconditionError",
    "TrialNotFoundError",
    "TrialServiceError",
    "TrialStoreUnavailableError",
    "TrialStoreWriteError",
    "Decision",
    "DecisionKind",
    "LifecycleState",
    "NotificationEvent",
    "RunSummary",
    "SCHEDULER_TRIGGER",
    "TenantError",
    "TrialConfig",
    "TrialRecord",
    "apply_decision",
    "check_invariants",
    "days_left",
    "decide",
    "new_trial_record",
    "PostgresTrialStore",
    "TrialRecordStore",
]
