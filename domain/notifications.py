"""Domain Notification Interface"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict
from uuid import UUID

from pydantic import BaseModel, Field

from domain.enums import NotificationKind


class Notification(BaseModel):
    """Fire-and-forget message for a user"""
    kind: NotificationKind
    user_id: UUID
    title: str
    message: str
    payload: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.now)


class NotificationSink(ABC):
    """Outbound channel for confirmations, pickup notices and reminders"""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        pass
