"""
Pending downgrade notification routes.

- GET    /api/notifications
- DELETE /api/notifications/{id}
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from larder.api.deps import get_gateway
from larder.features.notifications.service import NotificationQueue
from larder.models.notification import PendingNotification
from larder.realtime.hub import SessionHub

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=List[PendingNotification])
async def list_notifications(kind: Optional[str] = Query(None), gateway=Depends(get_gateway)):
    return await NotificationQueue(gateway, SessionHub()).pending(kind)


@router.delete("/{notification_id}", status_code=204)
async def dismiss_notification(notification_id: str, gateway=Depends(get_gateway)):
    await NotificationQueue(gateway, SessionHub()).dismiss(notification_id)
    return Response(status_code=204)
