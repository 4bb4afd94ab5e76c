"""
larder/features/remote/supabase_gateway.py

RemoteGateway over the hosted Supabase project.

PostgREST for tables (/rest/v1/<table>) and remote procedures
(/rest/v1/rpc/<fn>), GoTrue for the auth user (/auth/v1/user). Requests run
with the user's access token so row-level security applies server-side.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from larder.core.config import settings
from larder.core.errors import RemoteCallError
from larder.features.remote.realtime import RealtimeMembershipFeed
from larder.models.household import Household, HouseholdInvitation, InvitationStatus, MemberRole, RosterEntry
from larder.models.notification import PendingNotification

logger = logging.getLogger(__name__)

_HOUSEHOLD_COLUMNS = "id,name,invite_code,created_by,max_members,metadata,created_at"
_PROFILE_COLUMNS = "id,subscription_status,subscription_plan_id,trial_started_at,trial_end_at,has_used_trial"
_INVITATION_COLUMNS = (
    "id,household_id,invited_by,invited_email,invited_user_id,message,status,expires_at,created_at,responded_at"
)


def _encode(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in values.items()}


def _eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _household(row: Dict[str, Any]) -> Household:
    return Household(**{k: v for k, v in row.items() if k in Household.model_fields and v is not None})


def _roster_order(entry: RosterEntry):
    created = entry.household.created_at
    return (not entry.is_owner, created is None, created.timestamp() if created else 0.0)


class SupabaseGateway:
    """
    Args:
        user_id: authenticated user (JWT ``sub``)
        access_token: the user's JWT
        client: optional preconfigured AsyncClient (tests inject a mock transport)
    """

    def __init__(
        self,
        user_id: str,
        access_token: str,
        *,
        url: Optional[str] = None,
        anon_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.user_id = user_id
        self.access_token = access_token
        self.url = (url or settings.SUPABASE_URL or "").rstrip("/")
        self.anon_key = anon_key or settings.SUPABASE_ANON_KEY or ""
        self._client = client or httpx.AsyncClient(
            base_url=self.url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        self._headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers={**self._headers, **(headers or {})},
            )
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.warning(
                "[remote] request rejected",
                extra={"path": path, "status": e.response.status_code, "user_id": self.user_id},
            )
            raise RemoteCallError(f"{method} {path} failed with {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("[remote] transport error", extra={"path": path, "error": str(e), "user_id": self.user_id})
            raise RemoteCallError(f"{method} {path} failed: {e}") from e

    async def _select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return response.json() or []

    async def _rpc(self, function: str, params: Dict[str, Any]) -> Any:
        response = await self._request("POST", f"/rest/v1/rpc/{function}", json=params)
        return response.json()

    # Row-level queries

    async def fetch_memberships(self, *, active_only: bool = True) -> List[RosterEntry]:
        params = {
            "select": f"household_id,role,is_active,households({_HOUSEHOLD_COLUMNS})",
            "user_id": _eq(self.user_id),
            "order": "role.desc",
        }
        if active_only:
            params["is_active"] = _eq(True)
        rows = await self._select("household_members", params)

        entries = [
            RosterEntry(
                household_id=row["household_id"],
                role=MemberRole(row["role"]),
                is_active=bool(row.get("is_active", True)),
                household=_household(row["households"]),
            )
            for row in rows
            if row.get("households")
        ]
        # PostgREST orders by role only; settle ties by household age
        return sorted(entries, key=_roster_order)

    async def get_user_metadata(self) -> Dict[str, Any]:
        response = await self._request("GET", "/auth/v1/user")
        return (response.json() or {}).get("user_metadata") or {}

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._select("profiles", {"select": _PROFILE_COLUMNS, "id": _eq(user_id)})
        return rows[0] if rows else None

    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> None:
        await self._request("PATCH", "/rest/v1/profiles", params={"id": _eq(user_id)}, json=_encode(values))

    async def get_household(self, household_id: str) -> Optional[Household]:
        rows = await self._select("households", {"select": _HOUSEHOLD_COLUMNS, "id": _eq(household_id)})
        return _household(rows[0]) if rows else None

    async def list_owned_households(self, user_id: str, *, min_max_members: Optional[int] = None) -> List[Household]:
        params = {"select": _HOUSEHOLD_COLUMNS, "created_by": _eq(user_id), "order": "created_at.asc"}
        if min_max_members is not None:
            params["max_members"] = f"gt.{min_max_members}"
        return [_household(row) for row in await self._select("households", params)]

    async def insert_household(self, *, name: str, created_by: str, max_members: int, invite_code: str) -> Household:
        response = await self._request(
            "POST",
            "/rest/v1/households",
            json={"name": name, "created_by": created_by, "max_members": max_members, "invite_code": invite_code},
            headers={"Prefer": "return=representation"},
        )
        rows = response.json() or []
        if not rows:
            raise RemoteCallError("Household insert returned no row")
        return _household(rows[0])

    async def delete_household(self, household_id: str) -> None:
        await self._request("DELETE", "/rest/v1/households", params={"id": _eq(household_id)})

    async def insert_membership(self, *, household_id: str, user_id: str, role: str, is_active: bool = True) -> None:
        await self._request(
            "POST",
            "/rest/v1/household_members",
            json={"household_id": household_id, "user_id": user_id, "role": role, "is_active": is_active},
        )

    async def set_membership_active(self, *, household_id: str, user_id: str, is_active: bool) -> None:
        await self._request(
            "PATCH",
            "/rest/v1/household_members",
            params={"household_id": _eq(household_id), "user_id": _eq(user_id)},
            json={"is_active": is_active},
        )

    async def list_membership_rows(self, household_id: str) -> List[Dict[str, Any]]:
        return await self._select("household_members", {
            "select": "user_id,role,is_active,joined_at",
            "household_id": _eq(household_id),
            "order": "joined_at.asc",
        })

    async def count_items(self, household_id: str, *, status: str = "active") -> int:
        response = await self._request(
            "HEAD",
            "/rest/v1/items",
            params={"select": "id", "household_id": _eq(household_id), "status": _eq(status)},
            headers={"Prefer": "count=exact"},
        )
        # Content-Range: 0-19/20 or */0
        content_range = response.headers.get("content-range", "*/0")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    # Pending notifications

    async def insert_notification(self, notification: PendingNotification) -> None:
        await self._request("POST", "/rest/v1/household_notifications", json={
            "id": notification.id,
            "user_id": notification.user_id,
            "household_id": notification.household_id,
            "kind": notification.kind,
            "payload": {
                "household_name": notification.household_name,
                "members_made_inactive": notification.members_made_inactive,
                "original_member_count": notification.original_member_count,
                "current_member_count": notification.current_member_count,
            },
            "created_at": notification.created_at.isoformat(),
        })

    async def list_notifications(self, user_id: str) -> List[PendingNotification]:
        rows = await self._select("household_notifications", {
            "select": "id,user_id,household_id,kind,payload,created_at",
            "user_id": _eq(user_id),
            "order": "created_at.asc",
        })
        return [
            PendingNotification(
                id=row["id"],
                user_id=row["user_id"],
                household_id=row["household_id"],
                kind=row["kind"],
                created_at=row["created_at"],
                **(row.get("payload") or {}),
            )
            for row in rows
        ]

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", "/rest/v1/household_notifications", params={"id": _eq(notification_id)})

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
        response = await self._request(
            "POST",
            "/rest/v1/household_invitations",
            json=_encode({
                "household_id": household_id,
                "invited_by": self.user_id,
                "invited_email": invited_email,
                "invited_user_id": invited_user_id,
                "message": message,
                "status": InvitationStatus.PENDING.value,
                "expires_at": expires_at,
            }),
            headers={"Prefer": "return=representation"},
        )
        rows = response.json() or []
        if not rows:
            raise RemoteCallError("Invitation insert returned no row")
        return HouseholdInvitation(**rows[0])

    async def list_pending_invitations(self) -> List[HouseholdInvitation]:
        # Row-level security limits the rows to invitations addressed to this user
        rows = await self._select("household_invitations", {
            "select": _INVITATION_COLUMNS,
            "status": _eq(InvitationStatus.PENDING.value),
            "expires_at": f"gt.{datetime.now(timezone.utc).isoformat()}",
            "order": "created_at.desc",
        })
        return [HouseholdInvitation(**row) for row in rows]

    async def accept_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        return await self._rpc("accept_household_invitation", {"invitation_id": invitation_id})

    async def decline_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        return await self._rpc("decline_household_invitation", {"invitation_id": invitation_id})

    # Remote procedures

    async def switch_active_household(self, user_id: str, new_household_id: str) -> Dict[str, Any]:
        return await self._rpc("switch_active_household", {
            "user_id_param": user_id,
            "new_household_id": new_household_id,
        })

    async def downgrade_premium_household(self, household_id: str, user_id: str) -> Dict[str, Any]:
        return await self._rpc("downgrade_premium_household", {
            "household_id_param": household_id,
            "user_id_param": user_id,
        })

    async def get_household_downgrade_status(self, household_id: str) -> Dict[str, Any]:
        return await self._rpc("get_household_downgrade_status", {"household_id_param": household_id})

    async def reactivate_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        return await self._rpc("reactivate_household_member", {
            "household_id_param": household_id,
            "member_user_id": member_user_id,
        })

    async def remove_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        return await self._rpc("remove_household_member", {
            "household_id_param": household_id,
            "member_user_id": member_user_id,
        })

    async def transfer_household_ownership(self, household_id: str, new_owner_user_id: str) -> Dict[str, Any]:
        return await self._rpc("transfer_household_ownership", {
            "household_id_param": household_id,
            "new_owner_user_id": new_owner_user_id,
        })

    async def update_household_settings(
        self,
        household_id: str,
        *,
        new_name: Optional[str] = None,
        new_max_members: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._rpc("update_household_settings", {
            "household_id_param": household_id,
            "new_name": new_name,
            "new_max_members": new_max_members,
        })

    async def has_premium_access(self, user_id: str) -> bool:
        return bool(await self._rpc("has_premium_access", {"user_id": user_id}))

    async def get_household_members(self, household_id: str) -> List[Dict[str, Any]]:
        return await self._rpc("get_household_members", {"household_id_param": household_id}) or []

    # Realtime

    def subscribe_membership_changes(self) -> RealtimeMembershipFeed:
        return RealtimeMembershipFeed(
            url=self.url,
            anon_key=self.anon_key,
            access_token=self.access_token,
            user_id=self.user_id,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
