"""
Progress notifications.

NotificationService fans notifications out to subscribed handlers.
Delivery is fire-and-forget: a failing handler is logged and skipped,
it never interrupts orchestration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from taskforge.models import utc_now


logger = logging.getLogger(__name__)


class NotificationType(Enum):
    """Kinds of progress notification."""
    PHASE_STARTED = "phase_started"
    PHASE_PROGRESS = "phase_progress"
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    CONSOLE_LOG = "console_log"
    APPROVAL_STATE_CHANGED = "approval_state_changed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


@dataclass
class Notification:
    """One notification."""
    type: NotificationType
    task_id: str
    message: str = ""
    phase: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "task_id": self.task_id,
            "message": self.message,
            "phase": self.phase,
            "data": self.data,
            "timestamp": self.timestamp,
        }


NotificationHandler = Callable[[Notification], None]


class NotificationService:
    """Routes notifications to subscribers."""

    def __init__(self) -> None:
        self._handlers: dict[NotificationType, list[NotificationHandler]] = {}
        self._global_handlers: list[NotificationHandler] = []

    def subscribe(self, notification_type: NotificationType, handler: NotificationHandler) -> None:
        """Subscribe to a specific notification type."""
        self._handlers.setdefault(notification_type, []).append(handler)

    def subscribe_all(self, handler: NotificationHandler) -> None:
        """Subscribe to all notifications."""
        self._global_handlers.append(handler)

    def unsubscribe(self, notification_type: NotificationType, handler: NotificationHandler) -> None:
        if notification_type in self._handlers:
            self._handlers[notification_type] = [
                h for h in self._handlers[notification_type] if h != handler
            ]

    def notify(self, notification: Notification) -> None:
        """Deliver a notification to every matching handler."""
        handlers = self._global_handlers + self._handlers.get(notification.type, [])
        for handler in handlers:
            try:
                handler(notification)
            except Exception:
                logger.exception(
                    "Notification handler failed for %s (task %s)",
                    notification.type.value, notification.task_id,
                )

    def emit(
        self,
        notification_type: NotificationType,
        task_id: str,
        message: str = "",
        phase: Optional[str] = None,
        **data: Any,
    ) -> None:
        """Build and deliver a notification."""
        self.notify(Notification(
            type=notification_type,
            task_id=task_id,
            message=message,
            phase=phase,
            data=data,
        ))
