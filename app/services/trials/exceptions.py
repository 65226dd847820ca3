"""
Trial Service Domain Exceptions
"""


class TrialServiceError(Exception):
    """Base exception for trial lifecycle errors"""
    pass


class RunPreconditionError(TrialServiceError):
    """A run cannot start; it reports failed and mutates nothing"""

    run_error = "run_precondition_failed"

    def __init__(self, detail: str = ""):
        super().__init__(f"{self.run_error}: {detail}" if detail else self.run_error)
        self.detail = detail


class TrialStoreUnavailableError(RunPreconditionError):
    """Raised when the trial record store cannot be reached at run start"""
    run_error = "store_unavailable"


class NotificationChannelUnavailableError(RunPreconditionError):
    """Raised when the notification dispatcher cannot be reached at run start"""
    run_error = "dispatcher_unavailable"


class RunAlreadyInProgressError(RunPreconditionError):
    """Raised when the run mutex is held by another run"""
    run_error = "run_already_in_progress"


class TrialStoreWriteError(TrialServiceError):
    """Raised when a conditional state write fails (not a lost race)"""

    def __init__(self, tenant_id: str, message: str):
        super().__init__(f"tenant={tenant_id}: {message}")
        self.tenant_id = tenant_id


class InvalidTrialStateError(TrialServiceError):
    """Raised when a trial record is in an impossible state"""

    def __init__(self, tenant_id: str, reason: str):
        super().__init__(f"tenant={tenant_id}: {reason}")
        self.tenant_id = tenant_id
        self.reason = reason


class TrialNotFoundError(TrialServiceError):
    """Raised when an administrative action targets a tenant without a trial record"""
    pass


class OutcomeUnconfirmedError(TrialServiceError):
    """
    Raised when a retried call's first attempt failed and the retry found
    the work already done, so whether this run did it cannot be told.
    """

    def __init__(self, tenant_id: str, operation: str):
        super().__init__(f"tenant={tenant_id}: {operation} outcome unconfirmed after a failed first attempt")
        self.tenant_id = tenant_id
        self.operation = operation
