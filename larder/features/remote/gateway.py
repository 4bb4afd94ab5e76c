"""
Remote gateway protocol.

Defines the interface to the hosted backend (row-level queries, remote
procedures, realtime membership changes). Business logic depends only on
this protocol, so the Supabase client and the local SQL backend are
interchangeable.

Remote procedures return the raw JSON object the procedure builds
({"success": bool, "error": str, ...}); callers decide how to surface
failures. Transport or server failures raise RemoteCallError.
"""
from datetime import datetime
from typing import Protocol, Dict, Any, List, Optional, AsyncIterator

from larder.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from larder.models.household import Household, HouseholdInvitation, MembershipChange, RosterEntry
from larder.models.notification import PendingNotification


class MembershipSubscription(Protocol):
    """
    Cancellable stream of membership change events.

    Iterate with ``async for``; ``close()`` ends the iteration.
    """

    def __aiter__(self) -> AsyncIterator[MembershipChange]:
        ...

    async def close(self) -> None:
        ...


class RemoteGateway(Protocol):
    """
    Protocol for the household backend, bound to one authenticated user.

    Implementations must honour row-level scoping: every query runs as
    ``user_id``.
    """

    user_id: str

    # Row-level queries

    async def fetch_memberships(self, *, active_only: bool = True) -> List[RosterEntry]:
        """
        Memberships of the current user joined with household details.

        Returns:
            Entries ordered owner-first, then by household creation time
        """
        ...

    async def get_user_metadata(self) -> Dict[str, Any]:
        """Auth user metadata (onboarding flags)."""
        ...

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Profile row with subscription fields, or None when missing."""
        ...

    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> None:
        ...

    async def get_household(self, household_id: str) -> Optional[Household]:
        ...

    async def list_owned_households(self, user_id: str, *, min_max_members: Optional[int] = None) -> List[Household]:
        """
        Households created by ``user_id``.

        Args:
            min_max_members: when set, only households with max_members
                strictly greater than this value
        """
        ...

    async def insert_household(self, *, name: str, created_by: str, max_members: int, invite_code: str) -> Household:
        ...

    async def delete_household(self, household_id: str) -> None:
        ...

    async def insert_membership(self, *, household_id: str, user_id: str, role: str, is_active: bool = True) -> None:
        ...

    async def set_membership_active(self, *, household_id: str, user_id: str, is_active: bool) -> None:
        ...

    async def list_membership_rows(self, household_id: str) -> List[Dict[str, Any]]:
        """Raw membership rows (user_id, role, is_active) of one household."""
        ...

    async def count_items(self, household_id: str, *, status: str = "active") -> int:
        ...

    # Pending notifications

    async def insert_notification(self, notification: PendingNotification) -> None:
        ...

    async def list_notifications(self, user_id: str) -> List[PendingNotification]:
        ...

    async def delete_notification(self, notification_id: str) -> None:
        ...

    # Invitations

    async def insert_invitation(
        self,
        *,
        household_id: str,
        expires_at: datetime,
        invited_email: Optional[str] = None,
        invited_user_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> HouseholdInvitation:
        """Invitation sent by the current user."""
        ...

    async def list_pending_invitations(self) -> List[HouseholdInvitation]:
        """Unexpired pending invitations addressed to the current user, newest first."""
        ...

    async def accept_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        """
        Join the invitation's household as a member.

        Fails when the household already holds max_members rows; answering
        an invitation for a household the user already belongs to succeeds
        without a new membership.
        """
        ...

    async def decline_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        ...

    # Remote procedures

    async def switch_active_household(self, user_id: str, new_household_id: str) -> Dict[str, Any]:
        ...

    async def downgrade_premium_household(self, household_id: str, user_id: str) -> Dict[str, Any]:
        ...

    async def get_household_downgrade_status(self, household_id: str) -> Dict[str, Any]:
        ...

    async def reactivate_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        ...

    async def remove_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        ...

    async def transfer_household_ownership(self, household_id: str, new_owner_user_id: str) -> Dict[str, Any]:
        ...

    async def update_household_settings(
        self,
        household_id: str,
        *,
        new_name: Optional[str] = None,
        new_max_members: Optional[int] = None,
    ) -> Dict[str, Any]:
        ...

    async def has_premium_access(self, user_id: str) -> bool:
        ...

    async def get_household_members(self, household_id: str) -> List[Dict[str, Any]]:
        ...

    # Realtime

    def subscribe_membership_changes(self) -> MembershipSubscription:
        """Subscribe to household_members changes filtered by the current user."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


# Substring of the procedure's error text -> error raised to the caller.
# First match wins, so the specific phrases come before the generic ones.
_RPC_ERROR_RULES = (
    ("not found", NotFoundError),
    ("not authorized", PermissionError),
    ("does not match", PermissionError),
    ("target user is not a member", NotFoundError),
    ("user is not a member", NotFoundError),
    ("cannot remove other owners", PermissionError),
    ("only", PermissionError),
    ("access denied", PermissionError),
    ("not a member", PermissionError),
    ("capacity", ConflictError),
    ("reached its member limit", ConflictError),
    ("cannot", ValidationError),
    ("maximum", ValidationError),
)


def raise_for_rpc_error(result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn a ``{"success": false, "error": ...}`` procedure result into an AppError.

    Returns the result unchanged when it reports success.
    """
    if result.get("success", True):
        return result
    message = result.get("error") or "Remote procedure failed"
    lowered = message.lower()
    for needle, error_cls in _RPC_ERROR_RULES:
        if needle in lowered:
            raise error_cls(message)
    raise ConflictError(message)
