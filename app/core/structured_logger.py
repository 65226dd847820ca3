"""
One call shape for lifecycle log events.

    log_event(logger, component="coordinator", operation="trial_transition",
              outcome="success", tenant_id="school-1", to_state="warned_7d")

Fields travel as `extra` so StructuredFormatter (app.core.logging_config)
appends them as key=value pairs. Keep them free of PII: tenant ids and
states are fine, notification bodies and admin e-mail addresses are not.
"""
import logging
from typing import Any, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def log_event(
    logger: logging.Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    tenant_id: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    """
    Args:
        component: coordinator | scheduler | http | dispatcher | infra
        operation: run_check, trial_transition, notify, ...
        outcome: success | failed | conflict | skipped | degraded | ...
        level: level name; unknown names log at INFO
        message: defaults to "<component> <operation> outcome=<outcome>"
        **fields: extra non-PII fields; None values are dropped
    """
    extra = {
        key: value
        for key, value in (
            ("component", component),
            ("operation", operation),
            ("outcome", outcome),
            ("correlation_id", None if correlation_id is None else str(correlation_id)),
            ("duration_ms", duration_ms),
            ("reason", reason),
            ("tenant_id", tenant_id),
            *fields.items(),
        )
        if value is not None
    }
    logger.log(
        _LEVELS.get(level.lower(), logging.INFO),
        message or f"{component} {operation} outcome={outcome}",
        extra=extra,
    )
