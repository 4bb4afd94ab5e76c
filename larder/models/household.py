"""
larder/models/household.py

Household and membership models.

A household is the shared grocery-tracking unit. Membership joins a user to a
household with a role and an is_active flag; free users may only keep one
membership active at a time.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class MemberRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class OnboardingChoice(str, Enum):
    SKIPPED = "skipped"
    CREATED = "created"
    JOINED = "joined"


class Household(BaseModel):
    """Household row as returned by the backend."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    invite_code: Optional[str] = None
    created_by: str
    max_members: int = 5
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RosterEntry(BaseModel):
    """
    One membership of the current user, joined with its household.

    Ordered owner-first in a roster so the first entry is a deterministic
    default selection.
    """
    model_config = ConfigDict(frozen=True)

    household_id: str
    role: MemberRole
    is_active: bool = True
    household: Household

    @property
    def is_owner(self) -> bool:
        return self.role == MemberRole.OWNER


class HouseholdInvitation(BaseModel):
    """
    Invitation to join a household.

    Addressed either to a known user (invited_user_id) or to an email
    address; an email invitation is bound to the user who answers it.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    household_id: str
    invited_by: str
    invited_email: Optional[str] = None
    invited_user_id: Optional[str] = None
    message: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    expires_at: datetime
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None


class InvitationResult(BaseModel):
    """Outcome of accept_household_invitation / decline_household_invitation."""
    model_config = ConfigDict(frozen=True)

    success: bool
    household_id: Optional[str] = None
    household_name: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class HouseholdMember(BaseModel):
    """Member listing row (get_household_members)."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: MemberRole
    is_active: bool = True
    joined_at: Optional[datetime] = None
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None  # only visible to owners


class OnboardingState(BaseModel):
    """Onboarding flags read from auth user metadata."""
    model_config = ConfigDict(frozen=True)

    in_onboarding_flow: bool = False
    onboarding_completed: bool = False
    household_choice: Optional[OnboardingChoice] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "OnboardingState":
        data = metadata or {}
        raw_choice = data.get("onboarding_household_choice") or {}
        choice = raw_choice.get("choice") if isinstance(raw_choice, dict) else raw_choice
        try:
            parsed = OnboardingChoice(choice) if choice else None
        except ValueError:
            parsed = None
        return cls(
            in_onboarding_flow=bool(data.get("in_onboarding_flow", False)),
            onboarding_completed=bool(data.get("onboarding_completed", False)),
            household_choice=parsed,
        )


class DowngradeResult(BaseModel):
    """Outcome of the downgrade_premium_household procedure."""
    model_config = ConfigDict(frozen=True)

    success: bool
    downgraded: bool = False
    members_made_inactive: int = 0
    original_member_count: Optional[int] = None
    current_member_count: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None


class DowngradeStatus(BaseModel):
    """Outcome of the get_household_downgrade_status procedure."""
    model_config = ConfigDict(frozen=True)

    household_id: str
    max_members: int
    current_member_count: int
    inactive_member_count: int = 0
    was_premium: bool = False
    downgraded_at: Optional[datetime] = None
    original_max_members: Optional[int] = None
    is_overcapacity: bool = False
    needs_member_removal: bool = False


class HouseholdLimits(BaseModel):
    """Item/member limits for one household, inherited from its owner."""
    model_config = ConfigDict(frozen=True)

    household_id: Optional[str] = None
    item_count: int = 0
    item_limit: int = 20
    member_count: int = 0
    member_limit: int = 5
    household_owner_has_premium: bool = False

    @property
    def has_reached_item_limit(self) -> bool:
        return self.item_limit != -1 and self.item_count >= self.item_limit

    @property
    def can_add_items(self) -> bool:
        return not self.has_reached_item_limit


class MembershipChange(BaseModel):
    """Realtime change event on household_members for the current user."""
    model_config = ConfigDict(frozen=True)

    event_type: str  # INSERT | UPDATE | DELETE
    household_id: Optional[str] = None
    user_id: Optional[str] = None
    record: Dict[str, Any] = Field(default_factory=dict)


def roster_household_ids(entries: List[RosterEntry]) -> List[str]:
    return [e.household_id for e in entries]
