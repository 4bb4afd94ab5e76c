"""
larder/features/remote/sql_gateway.py

Local reference backend on SQLAlchemy Core.

Implements the RemoteGateway protocol against the tables in
core/database.py, reproducing the hosted remote procedures closely enough
for local development (BACKEND_MODE=local) and the test suite. Row-level
security is emulated by binding each gateway to one acting user.

Membership writes are published to an in-process change broker so the
realtime subscription behaves like the hosted channel.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select, insert, update, delete, func, case, and_, or_

from larder.core.config import settings
from larder.core.errors import PermissionError
from larder.core.database import (
    get_db_session,
    profiles,
    households,
    household_members,
    household_invitations,
    items,
    household_notifications,
)
from larder.features.entitlements.service import (
    FREE_LIMITS,
    PREMIUM_LIMITS,
    profile_from_row,
    resolve_entitlement,
)
from larder.models.household import (
    Household,
    HouseholdInvitation,
    InvitationStatus,
    MemberRole,
    MembershipChange,
    RosterEntry,
)
from larder.models.notification import PendingNotification

logger = logging.getLogger(__name__)

NEWEST_FIRST = "newest_first"
OLDEST_FIRST = "oldest_first"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _household_from_row(row) -> Household:
    m = row._mapping
    return Household(
        id=m["id"],
        name=m["name"],
        invite_code=m["invite_code"],
        created_by=m["created_by"],
        max_members=m["max_members"],
        created_at=_as_utc(m["created_at"]),
        metadata=dict(m["metadata"] or {}),
    )


def _invitation_from_row(row) -> HouseholdInvitation:
    m = row._mapping
    return HouseholdInvitation(
        id=m["id"],
        household_id=m["household_id"],
        invited_by=m["invited_by"],
        invited_email=m["invited_email"],
        invited_user_id=m["invited_user_id"],
        message=m["message"],
        status=InvitationStatus(m["status"]),
        expires_at=_as_utc(m["expires_at"]),
        created_at=_as_utc(m["created_at"]),
        responded_at=_as_utc(m["responded_at"]),
    )


def _fail(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error}


class LocalChangeBroker:
    """In-process fan-out of membership changes, keyed by user id."""

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    def register(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(user_id, set()).add(queue)
        return queue

    def unregister(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(user_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[user_id]

    def publish(self, change: MembershipChange) -> None:
        for queue in list(self._queues.get(change.user_id or "", ())):
            queue.put_nowait(change)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._queues.get(user_id, ()))


broker = LocalChangeBroker()

_CLOSED = object()


class LocalMembershipSubscription:
    """Cancellable async iterator over broker events for one user."""

    def __init__(self, change_broker: LocalChangeBroker, user_id: str):
        self._broker = change_broker
        self._user_id = user_id
        self._queue = change_broker.register(user_id)
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> MembershipChange:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker.unregister(self._user_id, self._queue)
        self._queue.put_nowait(_CLOSED)


class SqlGateway:
    """
    RemoteGateway backed by the local database, acting as ``user_id``.

    Args:
        user_id: acting (authenticated) user
        deactivation_order: which members a downgrade deactivates first,
            ``newest_first`` (most recently joined) or ``oldest_first``
        change_broker: realtime fan-out (module broker by default)
    """

    def __init__(
        self,
        user_id: str,
        *,
        deactivation_order: Optional[str] = None,
        change_broker: Optional[LocalChangeBroker] = None,
    ):
        self.user_id = user_id
        self.deactivation_order = deactivation_order or settings.DOWNGRADE_DEACTIVATION_ORDER
        self._broker = change_broker or broker

    def _publish(self, event_type: str, household_id: str, user_id: str, **record: Any) -> None:
        self._broker.publish(
            MembershipChange(
                event_type=event_type,
                household_id=household_id,
                user_id=user_id,
                record={"household_id": household_id, "user_id": user_id, **record},
            )
        )

    @staticmethod
    def _role_of(session, household_id: str, user_id: str) -> Optional[str]:
        return session.execute(
            select(household_members.c.role)
            .where(household_members.c.household_id == household_id)
            .where(household_members.c.user_id == user_id)
        ).scalar()

    @staticmethod
    def _active_member_count(session, household_id: str) -> int:
        return session.execute(
            select(func.count())
            .select_from(household_members)
            .where(household_members.c.household_id == household_id)
            .where(household_members.c.is_active.is_(True))
        ).scalar() or 0

    # Row-level queries

    async def fetch_memberships(self, *, active_only: bool = True) -> List[RosterEntry]:
        owner_first = case((household_members.c.role == MemberRole.OWNER.value, 0), else_=1)
        stmt = (
            select(
                household_members.c.household_id,
                household_members.c.role,
                household_members.c.is_active,
                households,
            )
            .join(households, households.c.id == household_members.c.household_id)
            .where(household_members.c.user_id == self.user_id)
            .order_by(owner_first, households.c.created_at, households.c.id)
        )
        if active_only:
            stmt = stmt.where(household_members.c.is_active.is_(True))
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
            return [
                RosterEntry(
                    household_id=row.household_id,
                    role=MemberRole(row.role),
                    is_active=bool(row.is_active),
                    household=_household_from_row(row),
                )
                for row in rows
            ]

    async def get_user_metadata(self) -> Dict[str, Any]:
        with get_db_session() as session:
            value = session.execute(
                select(profiles.c.user_metadata).where(profiles.c.id == self.user_id)
            ).scalar()
            return dict(value or {})

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with get_db_session() as session:
            row = session.execute(select(profiles).where(profiles.c.id == user_id)).first()
            if not row:
                return None
            m = row._mapping
            return {
                "id": m["id"],
                "subscription_status": m["subscription_status"],
                "subscription_plan_id": m["subscription_plan_id"],
                "trial_started_at": _as_utc(m["trial_started_at"]),
                "trial_end_at": _as_utc(m["trial_end_at"]),
                "has_used_trial": bool(m["has_used_trial"]),
            }

    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> None:
        with get_db_session() as session:
            result = session.execute(
                update(profiles)
                .where(profiles.c.id == user_id)
                .values(**values, updated_at=_utcnow())
            )
            if result.rowcount == 0:
                # Hosted projects create the row on signup; locally it appears on first write
                session.execute(insert(profiles).values(id=user_id, **values))

    async def get_household(self, household_id: str) -> Optional[Household]:
        with get_db_session() as session:
            row = session.execute(select(households).where(households.c.id == household_id)).first()
            return _household_from_row(row) if row else None

    async def list_owned_households(self, user_id: str, *, min_max_members: Optional[int] = None) -> List[Household]:
        stmt = select(households).where(households.c.created_by == user_id).order_by(households.c.created_at)
        if min_max_members is not None:
            stmt = stmt.where(households.c.max_members > min_max_members)
        with get_db_session() as session:
            return [_household_from_row(row) for row in session.execute(stmt).fetchall()]

    async def insert_household(self, *, name: str, created_by: str, max_members: int, invite_code: str) -> Household:
        household_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(households).values(
                    id=household_id,
                    name=name,
                    invite_code=invite_code,
                    created_by=created_by,
                    max_members=max_members,
                    metadata={},
                    created_at=_utcnow(),
                )
            )
            row = session.execute(select(households).where(households.c.id == household_id)).first()
            return _household_from_row(row)

    async def delete_household(self, household_id: str) -> None:
        with get_db_session() as session:
            session.execute(delete(household_members).where(household_members.c.household_id == household_id))
            session.execute(delete(items).where(items.c.household_id == household_id))
            session.execute(delete(households).where(households.c.id == household_id))

    async def insert_membership(self, *, household_id: str, user_id: str, role: str, is_active: bool = True) -> None:
        now = _utcnow()
        with get_db_session() as session:
            session.execute(
                insert(household_members).values(
                    household_id=household_id,
                    user_id=user_id,
                    role=role,
                    is_active=is_active,
                    metadata={},
                    joined_at=now,
                    updated_at=now,
                )
            )
        self._publish("INSERT", household_id, user_id, role=role, is_active=is_active)

    async def set_membership_active(self, *, household_id: str, user_id: str, is_active: bool) -> None:
        with get_db_session() as session:
            session.execute(
                update(household_members)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == user_id)
                .values(is_active=is_active, updated_at=_utcnow())
            )
        self._publish("UPDATE", household_id, user_id, is_active=is_active)

    async def list_membership_rows(self, household_id: str) -> List[Dict[str, Any]]:
        with get_db_session() as session:
            rows = session.execute(
                select(
                    household_members.c.user_id,
                    household_members.c.role,
                    household_members.c.is_active,
                    household_members.c.joined_at,
                )
                .where(household_members.c.household_id == household_id)
                .order_by(household_members.c.joined_at, household_members.c.id)
            ).fetchall()
            return [
                {
                    "user_id": r.user_id,
                    "role": r.role,
                    "is_active": bool(r.is_active),
                    "joined_at": _as_utc(r.joined_at),
                }
                for r in rows
            ]

    async def count_items(self, household_id: str, *, status: str = "active") -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count())
                .select_from(items)
                .where(items.c.household_id == household_id)
                .where(items.c.status == status)
            ).scalar() or 0

    # Pending notifications

    async def insert_notification(self, notification: PendingNotification) -> None:
        with get_db_session() as session:
            session.execute(
                insert(household_notifications).values(
                    id=notification.id,
                    user_id=notification.user_id,
                    household_id=notification.household_id,
                    kind=notification.kind,
                    payload={
                        "household_name": notification.household_name,
                        "members_made_inactive": notification.members_made_inactive,
                        "original_member_count": notification.original_member_count,
                        "current_member_count": notification.current_member_count,
                    },
                    created_at=notification.created_at,
                )
            )

    async def list_notifications(self, user_id: str) -> List[PendingNotification]:
        with get_db_session() as session:
            rows = session.execute(
                select(household_notifications)
                .where(household_notifications.c.user_id == user_id)
                .order_by(household_notifications.c.created_at, household_notifications.c.id)
            ).fetchall()
            return [
                PendingNotification(
                    id=r.id,
                    user_id=r.user_id,
                    household_id=r.household_id,
                    kind=r.kind,
                    created_at=_as_utc(r.created_at),
                    **dict(r.payload or {}),
                )
                for r in rows
            ]

    async def delete_notification(self, notification_id: str) -> None:
        with get_db_session() as session:
            session.execute(
                delete(household_notifications)
                .where(household_notifications.c.id == notification_id)
                .where(household_notifications.c.user_id == self.user_id)
            )

    # Invitations

    def _claim_invitation(self, session, invitation, action: str) -> Optional[str]:
        """Bind an email invitation to the acting user; returns an error message or None."""
        if invitation.invited_user_id is not None:
            if invitation.invited_user_id != self.user_id:
                return f"You are not authorized to {action} this invitation"
            return None
        email = session.execute(select(profiles.c.email).where(profiles.c.id == self.user_id)).scalar()
        if not email or email != invitation.invited_email:
            return "Your email does not match the invitation"
        session.execute(
            update(household_invitations)
            .where(household_invitations.c.id == invitation.id)
            .values(invited_user_id=self.user_id)
        )
        return None

    @staticmethod
    def _respond(session, invitation_id: str, status: InvitationStatus) -> None:
        session.execute(
            update(household_invitations)
            .where(household_invitations.c.id == invitation_id)
            .values(status=status.value, responded_at=_utcnow())
        )

    async def insert_invitation(
        self,
        *,
        household_id: str,
        expires_at: datetime,
        invited_email: Optional[str] = None,
        invited_user_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> HouseholdInvitation:
        invitation_id = str(uuid.uuid4())
        with get_db_session() as session:
            if self._role_of(session, household_id, self.user_id) is None:
                raise PermissionError("Access denied: You are not a member of this household")
            session.execute(
                insert(household_invitations).values(
                    id=invitation_id,
                    household_id=household_id,
                    invited_by=self.user_id,
                    invited_email=invited_email,
                    invited_user_id=invited_user_id,
                    message=message,
                    status=InvitationStatus.PENDING.value,
                    expires_at=expires_at,
                    created_at=_utcnow(),
                )
            )
            row = session.execute(
                select(household_invitations).where(household_invitations.c.id == invitation_id)
            ).first()
            return _invitation_from_row(row)

    async def list_pending_invitations(self) -> List[HouseholdInvitation]:
        now = _utcnow()
        with get_db_session() as session:
            email = session.execute(select(profiles.c.email).where(profiles.c.id == self.user_id)).scalar()
            addressed = household_invitations.c.invited_user_id == self.user_id
            if email:
                addressed = or_(
                    addressed,
                    and_(
                        household_invitations.c.invited_user_id.is_(None),
                        household_invitations.c.invited_email == email,
                    ),
                )
            rows = session.execute(
                select(household_invitations)
                .where(household_invitations.c.status == InvitationStatus.PENDING.value)
                .where(addressed)
                .order_by(household_invitations.c.created_at.desc())
            ).fetchall()
            return [_invitation_from_row(r) for r in rows if _as_utc(r.expires_at) > now]

    async def accept_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            invitation = session.execute(
                select(household_invitations)
                .where(household_invitations.c.id == invitation_id)
                .where(household_invitations.c.status == InvitationStatus.PENDING.value)
            ).first()
            if invitation is None or _as_utc(invitation.expires_at) <= _utcnow():
                return _fail("Invitation not found or has expired")

            error = self._claim_invitation(session, invitation, "accept")
            if error:
                return _fail(error)

            household = session.execute(
                select(households).where(households.c.id == invitation.household_id)
            ).first()
            if household is None:
                return _fail("Household not found")

            if self._role_of(session, household.id, self.user_id) is not None:
                self._respond(session, invitation_id, InvitationStatus.ACCEPTED)
                return {"success": True, "message": "You are already a member of this household"}

            # Every membership row counts here, inactive ones included
            member_count = session.execute(
                select(func.count())
                .select_from(household_members)
                .where(household_members.c.household_id == household.id)
            ).scalar() or 0
            if member_count >= household.max_members:
                return _fail("Household has reached its member limit")

            now = _utcnow()
            session.execute(
                insert(household_members).values(
                    household_id=household.id,
                    user_id=self.user_id,
                    role=MemberRole.MEMBER.value,
                    is_active=True,
                    metadata={},
                    joined_at=now,
                    updated_at=now,
                )
            )
            self._respond(session, invitation_id, InvitationStatus.ACCEPTED)
            household_id, household_name = household.id, household.name

        self._publish("INSERT", household_id, self.user_id, role=MemberRole.MEMBER.value, is_active=True)
        logger.info(
            "[remote] invitation accepted",
            extra={"user_id": self.user_id, "household_id": household_id, "invitation_id": invitation_id},
        )
        return {"success": True, "household_id": household_id, "household_name": household_name}

    async def decline_household_invitation(self, invitation_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            invitation = session.execute(
                select(household_invitations)
                .where(household_invitations.c.id == invitation_id)
                .where(household_invitations.c.status == InvitationStatus.PENDING.value)
            ).first()
            if invitation is None:
                return _fail("Invitation not found")

            error = self._claim_invitation(session, invitation, "decline")
            if error:
                return _fail(error)

            self._respond(session, invitation_id, InvitationStatus.DECLINED)
        return {"success": True}

    # Remote procedures

    async def switch_active_household(self, user_id: str, new_household_id: str) -> Dict[str, Any]:
        if user_id != self.user_id:
            return _fail("You can only switch your own active household")

        with get_db_session() as session:
            if self._role_of(session, new_household_id, user_id) is None:
                return _fail("You are not a member of this household")

            others = session.execute(
                select(household_members.c.household_id)
                .where(household_members.c.user_id == user_id)
                .where(household_members.c.household_id != new_household_id)
                .where(household_members.c.is_active.is_(True))
            ).scalars().all()

            now = _utcnow()
            session.execute(
                update(household_members)
                .where(household_members.c.user_id == user_id)
                .where(household_members.c.household_id != new_household_id)
                .values(is_active=False, updated_at=now)
            )
            session.execute(
                update(household_members)
                .where(household_members.c.user_id == user_id)
                .where(household_members.c.household_id == new_household_id)
                .values(is_active=True, updated_at=now)
            )

            active_count = session.execute(
                select(func.count())
                .select_from(household_members)
                .where(household_members.c.user_id == user_id)
                .where(household_members.c.is_active.is_(True))
            ).scalar()
            if active_count != 1:
                session.rollback()
                return _fail("Failed to switch household - database consistency error")

        for household_id in others:
            self._publish("UPDATE", household_id, user_id, is_active=False)
        self._publish("UPDATE", new_household_id, user_id, is_active=True)
        return {
            "success": True,
            "active_household_id": new_household_id,
            "deactivated_count": len(others),
        }

    async def downgrade_premium_household(self, household_id: str, user_id: str) -> Dict[str, Any]:
        if user_id != self.user_id:
            return _fail("You can only downgrade your own household")

        free_cap = FREE_LIMITS.max_household_members
        deactivated: List[str] = []

        with get_db_session() as session:
            row = session.execute(select(households).where(households.c.id == household_id)).first()
            if not row:
                return _fail("Household not found")
            household = _household_from_row(row)

            if household.created_by != user_id:
                return _fail("Only the household creator can downgrade the household")

            if household.max_members <= free_cap:
                return {
                    "success": True,
                    "downgraded": False,
                    "members_made_inactive": 0,
                    "message": "Household is already at free tier limits",
                }

            current_member_count = self._active_member_count(session, household_id)
            now = _utcnow()
            metadata = dict(household.metadata)
            metadata.update({
                "was_premium": True,
                "downgraded_at": now.isoformat(),
                "original_max_members": household.max_members,
                "member_count_at_downgrade": current_member_count,
            })
            session.execute(
                update(households)
                .where(households.c.id == household_id)
                .values(max_members=free_cap, metadata=metadata)
            )

            if current_member_count <= free_cap:
                return {
                    "success": True,
                    "downgraded": True,
                    "members_made_inactive": 0,
                    "member_count": current_member_count,
                    "message": "Household successfully downgraded to free tier",
                }

            # Owner always stays; the rest are kept in join order per policy
            candidates = session.execute(
                select(
                    household_members.c.user_id,
                    household_members.c.metadata,
                    household_members.c.joined_at,
                    household_members.c.id,
                )
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.is_active.is_(True))
                .where(household_members.c.user_id != household.created_by)
            ).fetchall()
            newest_last = sorted(candidates, key=lambda r: (_as_utc(r.joined_at), r.id))
            if self.deactivation_order == OLDEST_FIRST:
                ordered = list(reversed(newest_last))
            else:
                ordered = newest_last
            keep = free_cap - 1
            to_deactivate = ordered[keep:]

            for member in to_deactivate:
                member_meta = dict(member.metadata or {})
                member_meta.update({"removed_due_to_downgrade": True, "removed_at": now.isoformat()})
                session.execute(
                    update(household_members)
                    .where(household_members.c.household_id == household_id)
                    .where(household_members.c.user_id == member.user_id)
                    .values(is_active=False, metadata=member_meta, updated_at=now)
                )
                deactivated.append(member.user_id)

        for member_user_id in deactivated:
            self._publish("UPDATE", household_id, member_user_id, is_active=False)

        made_inactive = len(deactivated)
        logger.info(
            "[remote] household downgraded",
            extra={
                "household_id": household_id,
                "members_made_inactive": made_inactive,
                "deactivation_order": self.deactivation_order,
            },
        )
        return {
            "success": True,
            "downgraded": True,
            "original_member_count": current_member_count,
            "current_member_count": current_member_count - made_inactive,
            "members_made_inactive": made_inactive,
            "message": (
                f"Household downgraded. {made_inactive} members were made inactive "
                "and can rejoin when space is available."
            ),
        }

    async def get_household_downgrade_status(self, household_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            row = session.execute(select(households).where(households.c.id == household_id)).first()
            if not row:
                return _fail("Household not found")
            if self._role_of(session, household_id, self.user_id) is None:
                return _fail("Access denied")
            household = _household_from_row(row)

            current = self._active_member_count(session, household_id)
            inactive_rows = session.execute(
                select(household_members.c.metadata)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.is_active.is_(False))
            ).scalars().all()
            inactive = sum(1 for meta in inactive_rows if (meta or {}).get("removed_due_to_downgrade"))

        meta = household.metadata
        return {
            "success": True,
            "household_id": household_id,
            "max_members": household.max_members,
            "current_member_count": current,
            "inactive_member_count": inactive,
            "was_premium": bool(meta.get("was_premium", False)),
            "downgraded_at": meta.get("downgraded_at"),
            "original_max_members": meta.get("original_max_members"),
            "is_overcapacity": current > household.max_members,
            "needs_member_removal": current > household.max_members,
        }

    async def reactivate_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            row = session.execute(select(households).where(households.c.id == household_id)).first()
            if not row:
                return _fail("Household not found")
            household = _household_from_row(row)

            if self._role_of(session, household_id, self.user_id) != MemberRole.OWNER.value:
                return _fail("Only household owners can reactivate members")

            current = self._active_member_count(session, household_id)
            if current >= household.max_members:
                return _fail(f"Household is at capacity ({current}/{household.max_members} members)")

            member = session.execute(
                select(household_members.c.metadata)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == member_user_id)
                .where(household_members.c.is_active.is_(False))
            ).first()
            if not member:
                return _fail("Member not found or already active")

            member_meta = {
                k: v for k, v in dict(member.metadata or {}).items()
                if k not in ("removed_due_to_downgrade", "removed_at")
            }
            session.execute(
                update(household_members)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == member_user_id)
                .values(is_active=True, metadata=member_meta, updated_at=_utcnow())
            )

        self._publish("UPDATE", household_id, member_user_id, is_active=True)
        return {"success": True, "message": "Member successfully reactivated"}

    async def remove_household_member(self, household_id: str, member_user_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            if self._role_of(session, household_id, self.user_id) != MemberRole.OWNER.value:
                return _fail("Only household owners can remove members")

            target_role = self._role_of(session, household_id, member_user_id)
            if target_role is None:
                return _fail("User is not a member of this household")
            if target_role == MemberRole.OWNER.value and member_user_id != self.user_id:
                return _fail("Cannot remove other owners. Transfer ownership first.")

            session.execute(
                delete(household_members)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == member_user_id)
            )

        self._publish("DELETE", household_id, member_user_id)
        return {"success": True}

    async def transfer_household_ownership(self, household_id: str, new_owner_user_id: str) -> Dict[str, Any]:
        with get_db_session() as session:
            if self._role_of(session, household_id, self.user_id) != MemberRole.OWNER.value:
                return _fail("Only household owners can transfer ownership")
            if self._role_of(session, household_id, new_owner_user_id) is None:
                return _fail("Target user is not a member of this household")

            session.execute(
                update(household_members)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == self.user_id)
                .values(role=MemberRole.MEMBER.value)
            )
            session.execute(
                update(household_members)
                .where(household_members.c.household_id == household_id)
                .where(household_members.c.user_id == new_owner_user_id)
                .values(role=MemberRole.OWNER.value)
            )
            session.execute(
                update(households)
                .where(households.c.id == household_id)
                .values(created_by=new_owner_user_id)
            )

        self._publish("UPDATE", household_id, self.user_id, role=MemberRole.MEMBER.value)
        self._publish("UPDATE", household_id, new_owner_user_id, role=MemberRole.OWNER.value)
        return {"success": True}

    async def update_household_settings(
        self,
        household_id: str,
        *,
        new_name: Optional[str] = None,
        new_max_members: Optional[int] = None,
    ) -> Dict[str, Any]:
        with get_db_session() as session:
            if self._role_of(session, household_id, self.user_id) != MemberRole.OWNER.value:
                return _fail("Only household owners can update settings")

            if new_max_members is not None:
                member_count = session.execute(
                    select(func.count())
                    .select_from(household_members)
                    .where(household_members.c.household_id == household_id)
                ).scalar() or 0
                if new_max_members < member_count:
                    return _fail("Cannot reduce member limit below current member count")
                if new_max_members > PREMIUM_LIMITS.max_household_members:
                    return _fail(f"Maximum member limit is {PREMIUM_LIMITS.max_household_members}")

            values: Dict[str, Any] = {}
            if new_name is not None:
                values["name"] = new_name
            if new_max_members is not None:
                values["max_members"] = new_max_members
            if values:
                session.execute(update(households).where(households.c.id == household_id).values(**values))

        return {"success": True}

    async def has_premium_access(self, user_id: str) -> bool:
        profile = await self.get_profile(user_id)
        if not profile:
            return False
        return resolve_entitlement(profile_from_row(user_id, profile)).is_active

    async def get_household_members(self, household_id: str) -> List[Dict[str, Any]]:
        owner_first = case((household_members.c.role == MemberRole.OWNER.value, 0), else_=1)
        with get_db_session() as session:
            caller_role = self._role_of(session, household_id, self.user_id)
            if caller_role is None:
                raise PermissionError("Access denied: You are not a member of this household")

            rows = session.execute(
                select(
                    household_members.c.user_id,
                    household_members.c.role,
                    household_members.c.is_active,
                    household_members.c.joined_at,
                    profiles.c.username,
                    profiles.c.full_name,
                    profiles.c.avatar_url,
                    profiles.c.email,
                )
                .select_from(
                    household_members.outerjoin(profiles, profiles.c.id == household_members.c.user_id)
                )
                .where(household_members.c.household_id == household_id)
                .order_by(owner_first, household_members.c.joined_at, household_members.c.id)
            ).fetchall()

        return [
            {
                "user_id": r.user_id,
                "role": r.role,
                "is_active": bool(r.is_active),
                "joined_at": _as_utc(r.joined_at),
                "username": r.username,
                "full_name": r.full_name,
                "avatar_url": r.avatar_url,
                "email": r.email if caller_role == MemberRole.OWNER.value else None,
            }
            for r in rows
        ]

    # Realtime

    def subscribe_membership_changes(self) -> LocalMembershipSubscription:
        return LocalMembershipSubscription(self._broker, self.user_id)

    async def aclose(self) -> None:
        return None


def seed_profile(user_id: str, **fields: Any) -> None:
    """Create or replace a profile row (local development and tests)."""
    values = {
        "subscription_status": "free",
        "has_used_trial": False,
        "user_metadata": {},
    }
    values.update(fields)
    with get_db_session() as session:
        session.execute(delete(profiles).where(profiles.c.id == user_id))
        session.execute(insert(profiles).values(id=user_id, updated_at=_utcnow(), **values))
