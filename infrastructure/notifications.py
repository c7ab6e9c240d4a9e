"""Notification Sink Implementations"""
import logging
from typing import List

from domain.notifications import Notification, NotificationSink

logger = logging.getLogger(__name__)


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log; stands in for push/email delivery"""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "NOTIFICATION %s to %s: %s - %s",
            notification.kind.value, notification.user_id, notification.title, notification.message,
        )


class RecordingNotificationSink(NotificationSink):
    """Keeps every notification in memory"""

    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self):
        return [n.kind for n in self.sent]
