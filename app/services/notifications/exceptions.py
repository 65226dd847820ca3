"""
Notification Service Domain Exceptions
"""


class NotificationServiceError(Exception):
    """Base exception for notification service errors"""
    pass


class NotificationDispatchError(NotificationServiceError):
    """Raised when a trial notification could not be delivered"""

    def __init__(self, tenant_id: str, event: str, message: str):
        super().__init__(f"tenant={tenant_id} event={event}: {message}")
        self.tenant_id = tenant_id
        self.event = event


class NotificationRecipientMissingError(NotificationDispatchError):
    """Raised when a notification has nobody to go to"""
    pass
