"""
larder/models/downgrade.py

Downgrade reconciliation outcome models.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from larder.models.notification import PendingNotification


class ReconciliationState(str, Enum):
    COMPLIANT = "compliant"
    OVERCAPACITY = "overcapacity"
    RECONCILED = "reconciled"


class HouseholdDowngradeOutcome(BaseModel):
    """Result of downgrading one stale-capacity household."""
    model_config = ConfigDict(frozen=True)

    household_id: str
    household_name: str
    success: bool
    members_made_inactive: int = 0
    original_member_count: Optional[int] = None
    current_member_count: Optional[int] = None
    error: Optional[str] = None


class SelectionCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    household_id: str
    name: str


class ReconciliationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ReconciliationState
    outcomes: List[HouseholdDowngradeOutcome] = Field(default_factory=list)
    notifications: List[PendingNotification] = Field(default_factory=list)
    selection_required: bool = False
    candidates: List[SelectionCandidate] = Field(default_factory=list)
    skipped: bool = False  # another run was already in progress

    @property
    def members_made_inactive(self) -> int:
        return sum(o.members_made_inactive for o in self.outcomes)
