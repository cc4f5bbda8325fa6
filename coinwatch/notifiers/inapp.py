"""
In-app notification inbox.
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from .base import Notifier, NotificationResult
from .formatting import Message


@dataclass
class InAppNotification:
    message: str
    timestamp: datetime
    read: bool = False


class InAppNotifier(Notifier):
    """Keeps the most recent notifications per user in memory."""

    channel = "inApp"

    def __init__(self, max_per_user: int = 50):
        self.max_per_user = max_per_user
        self._inbox: dict[str, deque[InAppNotification]] = {}
        self._lock = threading.Lock()

    def send(self, destination: str, message: Message) -> NotificationResult:
        """Store the message in the inbox of user ``destination``."""
        with self._lock:
            inbox = self._inbox.setdefault(destination, deque(maxlen=self.max_per_user))
            inbox.append(
                InAppNotification(message=message.summary, timestamp=message.timestamp)
            )
        return NotificationResult(success=True, channel=self.channel)

    def get_notifications(self, user_id: str) -> list[InAppNotification]:
        """Oldest first."""
        with self._lock:
            return list(self._inbox.get(user_id, ()))

    def mark_all_read(self, user_id: str) -> None:
        with self._lock:
            for notification in self._inbox.get(user_id, ()):
                notification.read = True
