"""
larder/features/households/service.py

Household mutations for the session user.

Every mutation goes through the remote gateway and is followed by a roster
refresh request; local state is never patched optimistically.
"""

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from larder.core.config import settings
from larder.core.errors import (
    ConflictError,
    HouseholdCreationError,
    LimitExceededError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from larder.features.entitlements.service import capacity_limits, free_entitlement
from larder.features.remote.gateway import raise_for_rpc_error
from larder.models.entitlement import Entitlement
from larder.models.household import (
    DowngradeStatus,
    Household,
    HouseholdInvitation,
    HouseholdMember,
    InvitationResult,
    MemberRole,
)
from larder.realtime.hub import ROSTER_REFRESH_REQUESTED

logger = logging.getLogger(__name__)

INVITE_CODE_LENGTH = 8
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_HOUSEHOLD_NAME_LENGTH = 100


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Household name is required")
    if len(cleaned) > MAX_HOUSEHOLD_NAME_LENGTH:
        raise ValidationError(f"Household name must be at most {MAX_HOUSEHOLD_NAME_LENGTH} characters")
    return cleaned


async def create_household_with_owner(gateway, *, name: str, owner_id: str, max_members: int) -> Household:
    """
    Insert a household and its owner membership.

    The two writes are not atomic remotely. When the membership insert fails
    the household row is deleted again before the error is raised.

    Raises:
        HouseholdCreationError: either write failed
    """
    try:
        household = await gateway.insert_household(
            name=name,
            created_by=owner_id,
            max_members=max_members,
            invite_code=generate_invite_code(),
        )
    except Exception as e:
        logger.error("[household] insert failed", extra={"user_id": owner_id, "error": str(e)})
        raise HouseholdCreationError("Failed to create household") from e

    try:
        await gateway.insert_membership(
            household_id=household.id,
            user_id=owner_id,
            role=MemberRole.OWNER.value,
            is_active=True,
        )
    except Exception as e:
        logger.error(
            "[household] owner membership insert failed, deleting orphaned household",
            extra={"user_id": owner_id, "household_id": household.id, "error": str(e)},
        )
        try:
            await gateway.delete_household(household.id)
        except Exception as cleanup_error:
            logger.error(
                "[household] orphan cleanup failed",
                extra={"household_id": household.id, "error": str(cleanup_error)},
            )
        raise HouseholdCreationError("Failed to add you to the new household") from e

    logger.info(
        "[household] created",
        extra={"user_id": owner_id, "household_id": household.id, "max_members": max_members},
    )
    return household


class HouseholdService:
    """
    Household operations for the gateway's user.

    Args:
        gateway: RemoteGateway bound to the session user
        hub: SessionHub used to request roster refreshes
        entitlement_source: returns the user's current Entitlement
    """

    def __init__(self, gateway, hub, *, entitlement_source: Optional[Callable[[], Entitlement]] = None):
        self.gateway = gateway
        self.hub = hub
        self.entitlement_source = entitlement_source or free_entitlement

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    async def _request_refresh(self, reason: str) -> None:
        await self.hub.publish(ROSTER_REFRESH_REQUESTED, {"reason": reason, "user_id": self.user_id})

    async def create_household(self, name: str) -> Household:
        """
        Create a household owned by the user, sized by their current tier.

        Raises:
            ValidationError: empty or overlong name
            LimitExceededError: already at the active household limit
            HouseholdCreationError: remote writes failed (nothing left behind)
        """
        cleaned = _clean_name(name)
        entitlement = self.entitlement_source()
        limits = capacity_limits(entitlement.is_active)

        active = await self.gateway.fetch_memberships(active_only=True)
        if len(active) >= limits.max_households:
            raise LimitExceededError(
                f"Active household limit reached ({len(active)}/{limits.max_households})"
            )

        household = await create_household_with_owner(
            self.gateway,
            name=cleaned,
            owner_id=self.user_id,
            max_members=limits.max_household_members,
        )
        await self._request_refresh("household_created")
        return household

    async def switch_active_household(self, household_id: str) -> Dict[str, Any]:
        """
        Make a household active.

        Free users go through the switch procedure, which deactivates every
        other membership. Premium users activate one more household, up to
        the premium active limit.
        """
        entitlement = self.entitlement_source()
        if not entitlement.is_active:
            result = raise_for_rpc_error(
                await self.gateway.switch_active_household(self.user_id, household_id)
            )
            await self._request_refresh("household_switched")
            return result

        memberships = await self.gateway.fetch_memberships(active_only=False)
        target = next((m for m in memberships if m.household_id == household_id), None)
        if target is None:
            raise NotFoundError("You are not a member of this household")
        if not target.is_active:
            active_count = sum(1 for m in memberships if m.is_active)
            max_active = capacity_limits(True).max_households
            if active_count >= max_active:
                raise LimitExceededError(f"Active household limit reached ({active_count}/{max_active})")
            await self.gateway.set_membership_active(
                household_id=household_id, user_id=self.user_id, is_active=True
            )
        await self._request_refresh("household_switched")
        return {"success": True, "active_household_id": household_id}

    async def get_household_members(self, household_id: str) -> List[HouseholdMember]:
        rows = await self.gateway.get_household_members(household_id)
        return [HouseholdMember(**row) for row in rows]

    async def remove_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        result = raise_for_rpc_error(
            await self.gateway.remove_household_member(household_id, member_user_id)
        )
        await self._request_refresh("member_removed")
        return result

    async def transfer_household_ownership(self, household_id: str, new_owner_user_id: str) -> Dict[str, Any]:
        result = raise_for_rpc_error(
            await self.gateway.transfer_household_ownership(household_id, new_owner_user_id)
        )
        await self._request_refresh("ownership_transferred")
        return result

    async def update_household_settings(
        self,
        household_id: str,
        *,
        name: Optional[str] = None,
        max_members: Optional[int] = None,
    ) -> Dict[str, Any]:
        new_name = _clean_name(name) if name is not None else None
        if max_members is not None and max_members < 1:
            raise ValidationError("max_members must be positive")
        result = raise_for_rpc_error(
            await self.gateway.update_household_settings(
                household_id, new_name=new_name, new_max_members=max_members
            )
        )
        await self._request_refresh("settings_updated")
        return result

    async def reactivate_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        result = raise_for_rpc_error(
            await self.gateway.reactivate_household_member(household_id, member_user_id)
        )
        await self._request_refresh("member_reactivated")
        return result

    async def get_household_downgrade_status(self, household_id: str) -> DowngradeStatus:
        result = raise_for_rpc_error(await self.gateway.get_household_downgrade_status(household_id))
        return DowngradeStatus(**{k: v for k, v in result.items() if k in DowngradeStatus.model_fields})

    # Invitations

    async def invite_member(
        self,
        household_id: str,
        *,
        email: Optional[str] = None,
        invited_user_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> HouseholdInvitation:
        """
        Invite someone to a household the user owns.

        Raises:
            ValidationError: neither an email nor a user id given
            PermissionError: the user does not own the household
            ConflictError: the household is already full
        """
        email = (email or "").strip() or None
        if email is None and not invited_user_id:
            raise ValidationError("An email address or user id is required")
        if invited_user_id == self.user_id:
            raise ValidationError("You cannot invite yourself")

        memberships = await self.gateway.fetch_memberships(active_only=False)
        entry = next((m for m in memberships if m.household_id == household_id), None)
        if entry is None or not entry.is_owner:
            raise PermissionError("Only household owners can invite members")

        rows = await self.gateway.list_membership_rows(household_id)
        if len(rows) >= entry.household.max_members:
            raise ConflictError("Household has reached its member limit")

        invitation = await self.gateway.insert_invitation(
            household_id=household_id,
            invited_email=email,
            invited_user_id=invited_user_id,
            message=message,
            expires_at=datetime.now(timezone.utc) + timedelta(days=settings.INVITATION_EXPIRY_DAYS),
        )
        logger.info(
            "[household] invitation sent",
            extra={"user_id": self.user_id, "household_id": household_id, "invitation_id": invitation.id},
        )
        return invitation

    async def list_pending_invitations(self) -> List[HouseholdInvitation]:
        return await self.gateway.list_pending_invitations()

    async def accept_invitation(self, invitation_id: str) -> InvitationResult:
        """
        Join a household through an invitation.

        A free user keeps a single active household, so the joined household
        replaces whichever one was active. A premium user already at the
        active household limit is refused before anything is written.
        """
        entitlement = self.entitlement_source()
        if entitlement.is_active:
            active = await self.gateway.fetch_memberships(active_only=True)
            max_active = capacity_limits(True).max_households
            if len(active) >= max_active:
                raise LimitExceededError(f"Active household limit reached ({len(active)}/{max_active})")

        result = InvitationResult(
            **raise_for_rpc_error(await self.gateway.accept_household_invitation(invitation_id))
        )
        if result.household_id and not entitlement.is_active:
            raise_for_rpc_error(
                await self.gateway.switch_active_household(self.user_id, result.household_id)
            )

        logger.info(
            "[household] invitation accepted",
            extra={"user_id": self.user_id, "invitation_id": invitation_id, "household_id": result.household_id},
        )
        await self._request_refresh("invitation_accepted")
        return result

    async def decline_invitation(self, invitation_id: str) -> InvitationResult:
        result = raise_for_rpc_error(await self.gateway.decline_household_invitation(invitation_id))
        logger.info("[household] invitation declined", extra={"user_id": self.user_id, "invitation_id": invitation_id})
        return InvitationResult(**result)
