"""
Audit events for operator-triggered trial actions.

- Canonical audit event structure
- Correlation ID propagation (the run id)
- Redaction of anything that looks like a credential
- Best-effort writes: a failed audit write never fails the run
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from dataclasses import dataclass, asdict
from app.utils.logging_helpers import get_correlation_id

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """
    Canonical audit event.

    Fields:
    - action: what happened ("manual_trial_check", "trial_check_denied", ...)
    - actor_id: operator id (or "scheduler")
    - details: safe, redacted metadata
    - timestamp: UTC, auto-generated
    - correlation_id: run/request id, auto-filled from context
    """
    action: str
    actor_id: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    correlation_id: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()
        if self.correlation_id is None:
            self.correlation_id = get_correlation_id()
        if self.details:
            self.details = redact_metadata(self.details)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


# Substrings of keys whose values never reach the audit log
SENSITIVE_FIELDS = ("token", "password", "secret", "authorization", "api_key", "database_url")


def mask_secret(value: str) -> str:
    """'abcdef123456' -> 'abcd***'"""
    if len(value) <= 4:
        return "***"
    return value[:4] + "***"


def redact_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Redact sensitive values, recursing into nested dicts and lists.
    """
    redacted: Dict[str, Any] = {}
    for key, value in metadata.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_FIELDS):
            redacted[key] = mask_secret(value) if isinstance(value, str) else "***REDACTED***"
        elif isinstance(value, dict):
            redacted[key] = redact_metadata(value)
        elif isinstance(value, list):
            redacted[key] = [redact_metadata(item) if isinstance(item, dict) else item for item in value]
        else:
            redacted[key] = value
    return redacted


async def log_audit_event_safe(store, event: AuditEvent) -> bool:
    """
    Persist an audit event through the trial store (best-effort).

    Args:
        store: Anything with write_audit_log(action, actor_id, details)
        event: Audit event

    Returns:
        True if written, False otherwise. Never raises.
    """
    details = dict(event.details or {})
    details["timestamp"] = event.timestamp
    if event.correlation_id:
        details["correlationId"] = event.correlation_id
    try:
        await store.write_audit_log(event.action, event.actor_id, details)
        logger.info(f"AUDIT_EVENT_WRITTEN [action={event.action}, actor={event.actor_id}]")
        return True
    except Exception as e:
        logger.error(
            f"AUDIT_EVENT_FAILED [action={event.action}, actor={event.actor_id}, "
            f"error={type(e).__name__}: {str(e)[:100]}]"
        )
        return False
