"""
Notification Service Package

Delivery of trial lifecycle notifications to school admins and super-admins.
"""

from app.services.notifications.service import (
    NotificationDispatcher,
    DatabaseNotificationDispatcher,
    build_notification_rows,
    idempotency_unique_id,
    OPERATOR_EVENTS,
)

from app.services.notifications.exceptions import (
    NotificationServiceError,
    NotificationDispatchError,
    NotificationRecipientMissingError,
)

__all__ = [
    "NotificationDispatcher",
    "DatabaseNotificationDispatcher",
    "build_notification_rows",
    "idempotency_unique_id",
    "OPERATOR_EVENTS",
    "NotificationServiceError",
    "NotificationDispatchError",
    "NotificationRecipientMissingError",
]
