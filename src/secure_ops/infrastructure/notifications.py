"""NotificationSink implementations.

NotificationHub is the observable domain object that replaces UI-bound
toast state: services publish to it, and any number of subscribers
(a logger, an HTTP event feed, a test recorder) receive each event.
Delivery is fire-and-forget; a failing subscriber never breaks the workflow.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from secure_ops.domain.enums import NotificationLevel
from secure_ops.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from secure_ops.domain.models import Notification

logger = get_logger(__name__)


class LoggingNotificationSink:
    """Writes every notification to the structured log."""

    _LEVELS = {
        NotificationLevel.ERROR: "error",
        NotificationLevel.WARNING: "warning",
        NotificationLevel.INFO: "info",
        NotificationLevel.SUCCESS: "info",
    }

    def notify(self, notification: Notification) -> None:
        log = getattr(logger, self._LEVELS[notification.level])
        log(
            "notification",
            type=notification.level.value,
            title=notification.title,
            description=notification.description,
        )


class NotificationHub:
    """Fan-out sink with subscribe/unsubscribe."""

    def __init__(self) -> None:
        self._subscribers: list[Callable[[Notification], None]] = []

    def subscribe(self, callback: Callable[[Notification], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def notify(self, notification: Notification) -> None:
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                logger.exception("notification.subscriber_failed", title=notification.title)


class RecentNotifications:
    """Subscriber keeping the last ``limit`` notifications for polling surfaces."""

    def __init__(self, limit: int = 100) -> None:
        self._items: deque[Notification] = deque(maxlen=limit)

    def __call__(self, notification: Notification) -> None:
        self._items.append(notification)

    def items(self) -> list[Notification]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
