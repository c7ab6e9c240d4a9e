"""Role checks and safe notification delivery shared by the services"""
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from domain.auth import User
from domain.errors import PermissionDeniedError
from domain.notifications import Notification, NotificationSink

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def require_staff(actor: User, action: str) -> None:
    if not actor.is_staff:
        raise PermissionDeniedError(
            f"Only reception or administration staff may {action}",
            username=actor.username, role=actor.role.value,
        )


def require_admin(actor: User, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError(
            f"Only administrators may {action}",
            username=actor.username, role=actor.role.value,
        )


def require_owner_or_staff(actor: User, owner_id: UUID, action: str) -> None:
    if actor.user_id != owner_id and not actor.is_staff:
        raise PermissionDeniedError(
            f"You can only {action} your own reservations",
            username=actor.username,
        )


async def notify_safely(sink: Optional[NotificationSink], notification: Notification) -> bool:
    """Deliver a notification; a failing sink is logged and never propagates"""
    if sink is None:
        return False
    try:
        await sink.send(notification)
        return True
    except Exception:
        logger.exception(
            "Failed to deliver %s notification to user %s",
            notification.kind.value, notification.user_id,
        )
        return False
