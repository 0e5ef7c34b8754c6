"""
Notification Dispatcher

Forwards booking events (created, paid, promoted, cancelled, no-show,
expired, rescheduled, emergency) to the external notification service.
Delivery transport (SMS, email, push) belongs to that service.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from clinicflow.config import get_settings
from clinicflow.infra.webhooks import WebhookClient

logger = logging.getLogger(__name__)


# Audiences understood by the notification service
AUDIENCE_PATIENT = "patient"
AUDIENCE_RECEPTION = "reception"
AUDIENCE_DOCTOR = "doctor"


@dataclass
class Notification:
    """A single event for the notification service."""

    type: str  # e.g. "appointment.created", "waitlist.promoted"
    audience: list[str]
    recipient: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "type": self.type,
            "audience": list(self.audience),
            "recipient": self.recipient,
            "message": self.message,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class NotificationDispatcher(WebhookClient):
    """Fire-and-forget delivery of notifications."""

    name = "notifications"

    def __init__(self, url: Optional[str] = None, **kwargs):
        if url is None:
            url = get_settings().notification_webhook_url
        super().__init__(url=url, **kwargs)

    def dispatch(self, notification: Notification) -> None:
        """Queue a notification for delivery.

        Args:
            notification: Event to deliver
        """
        logger.debug(f"Dispatching {notification.type} to {notification.audience}")
        self.submit(notification.to_dict())


# Singleton instance
_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get singleton notification dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
