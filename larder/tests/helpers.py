"""Shared seeding helpers and fakes for the household test suite."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import insert, select

from larder.core.database import get_db_session, household_invitations, household_members, households, items
from larder.features.remote.sql_gateway import seed_profile

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def seed_premium(user_id: str, **fields) -> None:
    seed_profile(user_id, subscription_status="active", subscription_plan_id="premium_monthly", **fields)


def seed_free(user_id: str, **fields) -> None:
    seed_profile(user_id, subscription_status="free", **fields)


def seed_household(
    owner_id: str,
    *,
    name: str = "Home",
    max_members: int = 5,
    member_ids: Iterable[str] = (),
    created_at: Optional[datetime] = None,
    owner_active: bool = True,
    household_id: Optional[str] = None,
) -> str:
    """
    Insert a household with its owner and members.

    Members join one minute apart after the owner, in the order given.
    """
    hid = household_id or str(uuid.uuid4())
    created = created_at or BASE_TIME
    with get_db_session() as session:
        session.execute(insert(households).values(
            id=hid,
            name=name,
            invite_code=uuid.uuid4().hex[:8].upper(),
            created_by=owner_id,
            max_members=max_members,
            metadata={},
            created_at=created,
        ))
        session.execute(insert(household_members).values(
            household_id=hid, user_id=owner_id, role="owner", is_active=owner_active,
            metadata={}, joined_at=created, updated_at=created,
        ))
        for offset, member_id in enumerate(member_ids, start=1):
            joined = created + timedelta(minutes=offset)
            session.execute(insert(household_members).values(
                household_id=hid, user_id=member_id, role="member", is_active=True,
                metadata={}, joined_at=joined, updated_at=joined,
            ))
    return hid


def add_member(household_id: str, user_id: str, *, role: str = "member", is_active: bool = True,
               joined_at: Optional[datetime] = None) -> None:
    joined = joined_at or BASE_TIME
    with get_db_session() as session:
        session.execute(insert(household_members).values(
            household_id=household_id, user_id=user_id, role=role, is_active=is_active,
            metadata={}, joined_at=joined, updated_at=joined,
        ))


def seed_invitation(
    household_id: str,
    *,
    invited_by: str,
    invited_user_id: Optional[str] = None,
    invited_email: Optional[str] = None,
    status: str = "pending",
    expires_at: Optional[datetime] = None,
) -> str:
    """Insert an invitation; it expires a week from now unless told otherwise."""
    invitation_id = str(uuid.uuid4())
    with get_db_session() as session:
        session.execute(insert(household_invitations).values(
            id=invitation_id,
            household_id=household_id,
            invited_by=invited_by,
            invited_user_id=invited_user_id,
            invited_email=invited_email,
            status=status,
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(days=7),
            created_at=datetime.now(timezone.utc),
        ))
    return invitation_id


def invitation_row(invitation_id: str):
    with get_db_session() as session:
        return session.execute(
            select(household_invitations).where(household_invitations.c.id == invitation_id)
        ).first()


def seed_items(household_id: str, count: int, *, status: str = "active") -> None:
    with get_db_session() as session:
        for i in range(count):
            session.execute(insert(items).values(household_id=household_id, name=f"item-{i}", status=status))


def active_member_ids(household_id: str) -> List[str]:
    with get_db_session() as session:
        return list(session.execute(
            select(household_members.c.user_id)
            .where(household_members.c.household_id == household_id)
            .where(household_members.c.is_active.is_(True))
        ).scalars().all())


def active_household_ids(user_id: str) -> List[str]:
    with get_db_session() as session:
        return list(session.execute(
            select(household_members.c.household_id)
            .where(household_members.c.user_id == user_id)
            .where(household_members.c.is_active.is_(True))
        ).scalars().all())


def household_row(household_id: str):
    with get_db_session() as session:
        return session.execute(select(households).where(households.c.id == household_id)).first()


class RecordingSleeper:
    """Stands in for asyncio.sleep; records delays without waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class ManualTimer:
    """Sleeper that blocks until the test calls ``tick()``."""

    def __init__(self):
        self.calls: List[float] = []
        self._ticks: asyncio.Queue = asyncio.Queue()

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await self._ticks.get()

    async def tick(self) -> None:
        self._ticks.put_nowait(None)
        # Let the woken task run to its next suspension point
        for _ in range(10):
            await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """Hub subscriber collecting (topic, payload) pairs."""

    def __init__(self):
        self.events = []

    async def __call__(self, topic, payload):
        self.events.append((topic, payload))

    def of(self, topic):
        return [p for t, p in self.events if t == topic]
