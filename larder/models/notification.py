"""
larder/models/notification.py

Pending downgrade notification: tells an owner that a forced downgrade made
some of their household's members inactive. Stored one row per notification
and removed by id once the user dismisses it.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict

DOWNGRADE_OVERCAPACITY = "downgrade_overcapacity"


class PendingNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    household_id: str
    household_name: str
    kind: str = DOWNGRADE_OVERCAPACITY
    members_made_inactive: int
    original_member_count: int
    current_member_count: int
    created_at: datetime
