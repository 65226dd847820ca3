"""
Correlation ids, scheduler iteration lines and the failure taxonomy.

Every lifecycle run gets a run id which doubles as the correlation id of
all log lines, audit entries and notification keys it produces. The
scheduler writes one JSON line when an iteration starts and one when it
ends; the end line carries the run summary counts.

Failure taxonomy (classify_error):
- infra_error: database, Redis, network, timeouts
- dependency_error: notification channel (notifications table, Telegram)
- domain_error: invalid trial records, administrative misuse
- unexpected_error: everything else (bugs)
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger(__name__)

# Iteration outcome -> log level of the ITERATION_END line
_OUTCOME_LEVELS = {
    "failed": logging.ERROR,
    "degraded": logging.WARNING,
    "partial": logging.WARNING,
}


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def _iteration_line(event: str, worker_name: str, outcome: Optional[str], fields: Dict[str, Any]) -> None:
    level = _OUTCOME_LEVELS.get(outcome or "", logging.INFO)
    record: Dict[str, Any] = {
        "event": event,
        "level": logging.getLevelName(level),
        "worker": worker_name,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "correlation_id": get_correlation_id(),
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    if outcome is not None:
        record["outcome"] = outcome
    record.update({k: v for k, v in fields.items() if v is not None})
    logger.log(level, json.dumps(record, default=str))


def log_worker_iteration_start(
    worker_name: str,
    iteration_number: Optional[int] = None,
    correlation_id: Optional[str] = None,
    **kwargs
) -> str:
    """
    Bind a correlation id and log ITERATION_START.

    Returns:
        The bound correlation id (generated when not given)
    """
    correlation_id = correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    _iteration_line("ITERATION_START", worker_name, None, {"iteration_number": iteration_number, **kwargs})
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Log ITERATION_END.

    outcome is one of success | partial | degraded | failed | skipped | cancelled;
    failed is logged at ERROR, partial and degraded at WARNING.
    """
    _iteration_line(
        "ITERATION_END",
        worker_name,
        outcome,
        {
            "items_processed": items_processed,
            "error_type": error_type,
            "duration_ms": round(duration_ms, 1) if duration_ms is not None else None,
            **kwargs,
        },
    )


def classify_error(exception: BaseException) -> str:
    """
    Classify an exception for the failure taxonomy.

    Returns:
        "infra_error" | "dependency_error" | "domain_error" | "unexpected_error"
    """
    import asyncpg
    import aiohttp
    from app.services.trials.exceptions import (
        OutcomeUnconfirmedError,
        RunPreconditionError,
        TrialServiceError,
        TrialStoreWriteError,
    )
    from app.services.notifications.exceptions import NotificationServiceError

    if isinstance(exception, NotificationServiceError):
        return "dependency_error"

    if isinstance(exception, (RunPreconditionError, TrialStoreWriteError, OutcomeUnconfirmedError)):
        return "infra_error"

    if isinstance(exception, TrialServiceError):
        return "domain_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    if isinstance(exception, aiohttp.ClientError):
        return "dependency_error"

    return "unexpected_error"
