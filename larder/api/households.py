"""
Household API routes.

- GET  /api/households: the caller's memberships
- POST /api/households: create a household
- POST /api/households/{id}/activate: switch active household
- GET  /api/households/{id}/members
- GET  /api/households/{id}/limits
- GET  /api/households/{id}/downgrade-status
- POST /api/households/{id}/invitations: invite a member (owners only)
- GET  /api/households/invitations: pending invitations for the caller
- POST /api/households/invitations/{id}/accept | decline
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from larder.api.deps import get_entitlement, get_gateway
from larder.features.entitlements.service import EntitlementResolver
from larder.features.households.service import HouseholdService
from larder.models.entitlement import Entitlement
from larder.models.household import (
    DowngradeStatus,
    Household,
    HouseholdInvitation,
    HouseholdLimits,
    HouseholdMember,
    InvitationResult,
    RosterEntry,
)
from larder.realtime.hub import SessionHub

router = APIRouter(prefix="/api/households", tags=["households"])


class CreateHouseholdRequest(BaseModel):
    name: str


class InviteMemberRequest(BaseModel):
    email: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None


class RosterResponse(BaseModel):
    households: List[RosterEntry]
    selected_household_id: Optional[str] = None


def _service(gateway, entitlement: Entitlement) -> HouseholdService:
    # Stateless request: refresh events have no listener
    return HouseholdService(gateway, SessionHub(), entitlement_source=lambda: entitlement)


@router.get("", response_model=RosterResponse)
async def list_households(
    include_inactive: bool = Query(False),
    gateway=Depends(get_gateway),
):
    entries = await gateway.fetch_memberships(active_only=not include_inactive)
    active = [e for e in entries if e.is_active]
    return RosterResponse(
        households=entries,
        selected_household_id=active[0].household_id if active else None,
    )


@router.post("", response_model=Household, status_code=201)
async def create_household(
    request: CreateHouseholdRequest,
    gateway=Depends(get_gateway),
    entitlement: Entitlement = Depends(get_entitlement),
):
    return await _service(gateway, entitlement).create_household(request.name)


@router.post("/{household_id}/activate")
async def activate_household(
    household_id: str,
    gateway=Depends(get_gateway),
    entitlement: Entitlement = Depends(get_entitlement),
) -> Dict[str, Any]:
    return await _service(gateway, entitlement).switch_active_household(household_id)


@router.get("/{household_id}/members", response_model=List[HouseholdMember])
async def list_members(household_id: str, gateway=Depends(get_gateway)):
    return await HouseholdService(gateway, SessionHub()).get_household_members(household_id)


@router.get("/{household_id}/limits", response_model=HouseholdLimits)
async def household_limits(household_id: str, gateway=Depends(get_gateway)):
    return await EntitlementResolver(gateway).household_limits(household_id)


@router.get("/{household_id}/downgrade-status", response_model=DowngradeStatus)
async def downgrade_status(household_id: str, gateway=Depends(get_gateway)):
    return await HouseholdService(gateway, SessionHub()).get_household_downgrade_status(household_id)


@router.get("/invitations", response_model=List[HouseholdInvitation])
async def list_invitations(gateway=Depends(get_gateway)):
    return await HouseholdService(gateway, SessionHub()).list_pending_invitations()


@router.post("/{household_id}/invitations", response_model=HouseholdInvitation, status_code=201)
async def invite_member(
    household_id: str,
    request: InviteMemberRequest,
    gateway=Depends(get_gateway),
):
    return await HouseholdService(gateway, SessionHub()).invite_member(
        household_id, email=request.email, invited_user_id=request.user_id, message=request.message
    )


@router.post("/invitations/{invitation_id}/accept", response_model=InvitationResult)
async def accept_invitation(
    invitation_id: str,
    gateway=Depends(get_gateway),
    entitlement: Entitlement = Depends(get_entitlement),
):
    return await _service(gateway, entitlement).accept_invitation(invitation_id)


@router.post("/invitations/{invitation_id}/decline", response_model=InvitationResult)
async def decline_invitation(invitation_id: str, gateway=Depends(get_gateway)):
    return await HouseholdService(gateway, SessionHub()).decline_invitation(invitation_id)
