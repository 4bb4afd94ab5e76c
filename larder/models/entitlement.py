"""
larder/models/entitlement.py

Entitlement models: the resolved free/premium access level of a user.

Entitlements are derived, never stored: each session rebuilds them from the
subscription fields on the user's profile.

Value conventions:
- int limits use -1 for unlimited
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"


class SubscriptionProfile(BaseModel):
    """Subscription fields of a profile row."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    subscription_status: Optional[SubscriptionStatus] = SubscriptionStatus.FREE
    subscription_plan_id: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    trial_end_at: Optional[datetime] = None
    has_used_trial: bool = False


class CapacityLimits(BaseModel):
    """Tier capacities; a pure function of premium access."""
    model_config = ConfigDict(frozen=True)

    max_households: int
    max_items_per_household: int
    max_household_members: int


class Entitlement(BaseModel):
    """Resolved access level for one user at one instant."""
    model_config = ConfigDict(frozen=True)

    is_active: bool = False
    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    is_trialing: bool = False
    trial_end: Optional[datetime] = None
    days_left_in_trial: int = 0
    limits: CapacityLimits

    @property
    def is_premium(self) -> bool:
        return self.is_active


class TrialStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_trialing: bool = False
    is_eligible_for_trial: bool = True
    trial_started: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    days_remaining: int = 0
    has_used_trial: bool = False
