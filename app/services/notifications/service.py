"""
Trial Notification Dispatcher

Turns (tenant, event, payload) into in-app notifications:
- one row for the school admin (with a link to the subscription page)
- one row per active super-admin for warnings, expiry and suspension
  (grace reminders go to the school admin only)

Suspensions are also forwarded to the operators' Telegram chat.

Delivery is guarded by a Redis idempotency key per boundary crossing, so
the coordinator's retry after an ambiguous failure cannot deliver twice.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from aiogram import Bot

import admin_notifications
import config
import database
from app import i18n
from app.core.idempotency import RedisIdempotency, create_idempotency
from app.services.notifications.exceptions import (
    NotificationDispatchError,
    NotificationRecipientMissingError,
    NotificationServiceError,
)
from app.services.trials.models import NotificationEvent, TrialConfig

logger = logging.getLogger(__name__)

IDEMPOTENCY_OPERATION = "trial_notification"

# Events super-admins are told about
OPERATOR_EVENTS = frozenset({
    NotificationEvent.FIRST_WARNING,
    NotificationEvent.SECOND_WARNING,
    NotificationEvent.FINAL_WARNING,
    NotificationEvent.TRIAL_EXPIRED_GRACE_STARTED,
    NotificationEvent.ACCOUNT_SUSPENDED,
})

# event -> (catalog prefix, school admin type, super-admin type)
_EVENT_TEMPLATES = {
    NotificationEvent.FIRST_WARNING: ("trial.warning", "warning", "info"),
    NotificationEvent.SECOND_WARNING: ("trial.warning", "warning", "info"),
    NotificationEvent.FINAL_WARNING: ("trial.warning", "warning", "info"),
    NotificationEvent.TRIAL_EXPIRED_GRACE_STARTED: ("trial.expired", "error", "warning"),
    NotificationEvent.GRACE_REMINDER: ("trial.grace_reminder", "error", None),
    NotificationEvent.ACCOUNT_SUSPENDED: ("trial.suspended", "error", "error"),
}


class NotificationDispatcher(Protocol):
    async def ping(self) -> None:
        """Raise if notifications cannot be delivered right now."""

    async def notify(self, tenant_id: str, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        """True if delivered, False if this boundary was already delivered; raise NotificationDispatchError."""


def idempotency_unique_id(tenant_id: str, event: NotificationEvent, payload: Dict[str, Any]) -> str:
    """{tenant}:{event}:{boundary}"""
    return f"{tenant_id}:{event.value}:{payload.get('boundary', '')}"


def build_notification_rows(
    tenant_id: str,
    event: NotificationEvent,
    payload: Dict[str, Any],
    super_admin_ids: List[str],
    trial_config: TrialConfig,
    action_url: str,
    language: str = i18n.DEFAULT_LANGUAGE,
) -> List[Dict[str, Any]]:
    """
    Notification rows for one event.

    Returns:
        School admin row first (if the school has an admin), then super-admin rows
    """
    prefix, admin_type, operator_type = _EVENT_TEMPLATES[event]
    days = int(payload.get("days_left") or 0)
    unknown = i18n.get_text(language, "common.unknown")
    params = {
        "days_label": i18n.days_label(language, days),
        "trial_days": trial_config.trial_length_days,
        "grace_days": trial_config.grace_days,
        "product": i18n.get_text(language, "common.product"),
        "admin_name": payload.get("admin_name") or unknown,
        "admin_email": payload.get("admin_email") or unknown,
        "school_name": payload.get("school_name") or unknown,
    }

    admin_title_key = f"{prefix}.admin_title"
    admin_message_key = f"{prefix}.admin_message"
    if event.is_warning and days == 0:
        admin_title_key += "_today"
        admin_message_key += "_today"

    rows: List[Dict[str, Any]] = []
    admin_id = payload.get("admin_id")
    if admin_id:
        rows.append({
            "recipient_id": admin_id,
            "recipient_role": "school_admin",
            "tenant_id": tenant_id,
            "event": event.value,
            "title": i18n.get_text(language, admin_title_key, **params),
            "message": i18n.get_text(language, admin_message_key, **params),
            "type": admin_type,
            "action_url": action_url,
        })

    if operator_type is not None:
        operator_message = i18n.get_text(language, f"{prefix}.operator_message", **params)
        if event is NotificationEvent.ACCOUNT_SUSPENDED and payload.get("school_name"):
            operator_message += i18n.get_text(language, "trial.suspended.operator_message_school", **params)
        operator_title = i18n.get_text(language, f"{prefix}.operator_title", **params)
        for super_admin_id in super_admin_ids:
            rows.append({
                "recipient_id": super_admin_id,
                "recipient_role": "super_admin",
                "tenant_id": tenant_id,
                "event": event.value,
                "title": operator_title,
                "message": operator_message,
                "type": operator_type,
                "action_url": None,
            })

    return rows


class DatabaseNotificationDispatcher:
    """NotificationDispatcher writing to the notifications table."""

    def __init__(
        self,
        trial_config: TrialConfig,
        idempotency: Optional[RedisIdempotency] = None,
        bot: Optional[Bot] = None,
        action_url: str = config.SUBSCRIPTION_ACTION_URL,
        language: str = i18n.DEFAULT_LANGUAGE,
    ):
        self.trial_config = trial_config
        self.idempotency = idempotency or create_idempotency()
        self.bot = bot
        self.action_url = action_url
        self.language = language

    async def ping(self) -> None:
        await database.ping()

    async def notify(self, tenant_id: str, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        """
        Deliver one trial notification.

        Returns:
            True if delivered, False if this boundary crossing was already delivered

        Raises:
            NotificationDispatchError: nothing was delivered (safe to retry)
        """
        unique_id = idempotency_unique_id(tenant_id, event, payload)
        if not await self.idempotency.acquire(IDEMPOTENCY_OPERATION, unique_id):
            logger.info(f"TRIAL_NOTIFICATION_DUPLICATE_SKIPPED [tenant={tenant_id}, event={event.value}]")
            return False

        try:
            super_admin_ids: List[str] = []
            if event in OPERATOR_EVENTS:
                super_admin_ids = await database.fetch_super_admin_ids()

            rows = build_notification_rows(
                tenant_id,
                event,
                payload,
                super_admin_ids,
                self.trial_config,
                self.action_url,
                self.language,
            )
            if not rows:
                raise NotificationRecipientMissingError(tenant_id, event.value, "no school admin or super-admin to notify")

            await database.insert_notifications(rows)
        except asyncio.CancelledError:
            # Caller's timeout; the insert did not complete, so free the key for the retry
            await self.idempotency.release(IDEMPOTENCY_OPERATION, unique_id)
            raise
        except Exception as e:
            await self.idempotency.release(IDEMPOTENCY_OPERATION, unique_id)
            if isinstance(e, NotificationServiceError):
                raise
            raise NotificationDispatchError(tenant_id, event.value, f"{type(e).__name__}: {str(e)[:100]}") from e

        logger.info(
            f"TRIAL_NOTIFICATION_SENT [tenant={tenant_id}, event={event.value}, recipients={len(rows)}]"
        )

        if event is NotificationEvent.ACCOUNT_SUSPENDED:
            await admin_notifications.notify_admin_tenant_suspended(self.bot, tenant_id, payload)
        return True
