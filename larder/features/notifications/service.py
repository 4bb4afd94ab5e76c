"""
larder/features/notifications/service.py

Pending downgrade notifications for the session user.

One row per notification; dismissal deletes that row only, so concurrent
writers never overwrite each other's notifications.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from larder.models.notification import DOWNGRADE_OVERCAPACITY, PendingNotification
from larder.realtime.hub import NOTIFICATION_CREATED

logger = logging.getLogger(__name__)


class NotificationQueue:
    def __init__(self, gateway, hub, *, clock: Optional[Callable[[], datetime]] = None):
        self.gateway = gateway
        self.hub = hub
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    async def push(
        self,
        *,
        household_id: str,
        household_name: str,
        members_made_inactive: int,
        original_member_count: int,
        current_member_count: int,
        kind: str = DOWNGRADE_OVERCAPACITY,
    ) -> Optional[PendingNotification]:
        """
        Append a notification.

        Returns:
            The stored notification, or None when the write failed (logged)
        """
        notification = PendingNotification(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            household_id=household_id,
            household_name=household_name,
            kind=kind,
            members_made_inactive=members_made_inactive,
            original_member_count=original_member_count,
            current_member_count=current_member_count,
            created_at=self.clock(),
        )
        try:
            await self.gateway.insert_notification(notification)
        except Exception as e:
            logger.error(
                "[notifications] failed to store notification",
                extra={"user_id": self.user_id, "household_id": household_id, "error": str(e)},
            )
            return None

        await self.hub.publish(NOTIFICATION_CREATED, notification.model_dump(mode="json"))
        return notification

    async def pending(self, kind: Optional[str] = None) -> List[PendingNotification]:
        """Undismissed notifications, oldest first."""
        try:
            notifications = await self.gateway.list_notifications(self.user_id)
        except Exception as e:
            logger.warning("[notifications] fetch failed", extra={"user_id": self.user_id, "error": str(e)})
            return []
        notifications = sorted(notifications, key=lambda n: n.created_at)
        if kind is not None:
            notifications = [n for n in notifications if n.kind == kind]
        return notifications

    async def next(self, kind: Optional[str] = None) -> Optional[PendingNotification]:
        pending = await self.pending(kind)
        return pending[0] if pending else None

    async def dismiss(self, notification_id: str) -> None:
        try:
            await self.gateway.delete_notification(notification_id)
        except Exception as e:
            logger.error(
                "[notifications] dismiss failed",
                extra={"user_id": self.user_id, "notification_id": notification_id, "error": str(e)},
            )
            raise
        logger.info("[notifications] dismissed", extra={"user_id": self.user_id, "notification_id": notification_id})
