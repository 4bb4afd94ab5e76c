"""Local SQL backend: remote procedure semantics and change feed."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from larder.features.remote.sql_gateway import SqlGateway
from larder.tests.helpers import (
    active_household_ids,
    active_member_ids,
    add_member,
    household_row,
    invitation_row,
    seed_free,
    seed_household,
    seed_invitation,
)


@pytest.mark.asyncio
async def test_switch_leaves_exactly_one_active_household():
    a = seed_household("u1", name="A")
    b = seed_household("u1", name="B")
    c = seed_household("alice", name="C")
    add_member(c, "u1")

    result = await SqlGateway("u1").switch_active_household("u1", b)

    assert result == {"success": True, "active_household_id": b, "deactivated_count": 2}
    assert active_household_ids("u1") == [b]
    assert a not in active_household_ids("u1")


@pytest.mark.asyncio
async def test_switch_to_already_active_household_still_deactivates_others():
    a = seed_household("u1", name="A")
    seed_household("u1", name="B")

    result = await SqlGateway("u1").switch_active_household("u1", a)

    assert result["success"] is True
    assert active_household_ids("u1") == [a]


@pytest.mark.asyncio
async def test_switch_requires_membership_and_own_user():
    a = seed_household("alice")
    gateway = SqlGateway("u1")

    assert (await gateway.switch_active_household("u1", a))["success"] is False
    assert (await gateway.switch_active_household("alice", a))["success"] is False


@pytest.mark.asyncio
async def test_only_creator_can_downgrade():
    hid = seed_household("owner", max_members=20, member_ids=["m1"])
    result = await SqlGateway("m1").downgrade_premium_household(hid, "m1")
    assert result["success"] is False
    assert household_row(hid).max_members == 20


@pytest.mark.asyncio
async def test_downgrade_marks_removed_members():
    hid = seed_household("owner", max_members=20, member_ids=[f"m{i}" for i in range(1, 7)])
    gateway = SqlGateway("owner")
    await gateway.downgrade_premium_household(hid, "owner")

    members = {m["user_id"]: m for m in await gateway.get_household_members(hid)}
    assert members["m6"]["is_active"] is False
    assert members["m1"]["is_active"] is True

    status = await gateway.get_household_downgrade_status(hid)
    assert status["was_premium"] is True
    assert status["inactive_member_count"] == 1


@pytest.mark.asyncio
async def test_membership_changes_reach_the_affected_user(change_broker):
    hid = seed_household("owner")
    watcher = SqlGateway("u1", change_broker=change_broker)
    subscription = watcher.subscribe_membership_changes()
    assert change_broker.subscriber_count("u1") == 1

    await SqlGateway("owner", change_broker=change_broker).insert_membership(
        household_id=hid, user_id="u1", role="member"
    )

    iterator = subscription.__aiter__()
    change = await asyncio.wait_for(iterator.__anext__(), timeout=1)
    assert change.event_type == "INSERT"
    assert change.household_id == hid

    await subscription.close()
    assert change_broker.subscriber_count("u1") == 0
    with pytest.raises(StopAsyncIteration):
        await iterator.__anext__()


@pytest.mark.asyncio
async def test_accept_invitation_adds_member_and_marks_accepted():
    hid = seed_household("owner", name="Flat")
    invitation = seed_invitation(hid, invited_by="owner", invited_user_id="u1")

    result = await SqlGateway("u1").accept_household_invitation(invitation)

    assert result == {"success": True, "household_id": hid, "household_name": "Flat"}
    assert "u1" in active_member_ids(hid)
    row = invitation_row(invitation)
    assert row.status == "accepted"
    assert row.responded_at is not None


@pytest.mark.asyncio
async def test_full_household_rejects_invitation():
    hid = seed_household("owner", max_members=3, member_ids=["m1"])
    # Inactive rows still take a seat
    add_member(hid, "m2", is_active=False)
    invitation = seed_invitation(hid, invited_by="owner", invited_user_id="u1")

    result = await SqlGateway("u1").accept_household_invitation(invitation)

    assert result == {"success": False, "error": "Household has reached its member limit"}
    assert "u1" not in active_member_ids(hid)
    assert invitation_row(invitation).status == "pending"


@pytest.mark.asyncio
async def test_email_invitation_binds_to_matching_user():
    seed_free("u1", email="u1@example.com")
    seed_free("u2", email="u2@example.com")
    hid = seed_household("owner")
    invitation = seed_invitation(hid, invited_by="owner", invited_email="u1@example.com")

    assert [i.id for i in await SqlGateway("u1").list_pending_invitations()] == [invitation]
    assert await SqlGateway("u2").list_pending_invitations() == []

    wrong = await SqlGateway("u2").accept_household_invitation(invitation)
    assert wrong == {"success": False, "error": "Your email does not match the invitation"}

    assert (await SqlGateway("u1").accept_household_invitation(invitation))["success"] is True
    assert invitation_row(invitation).invited_user_id == "u1"


@pytest.mark.asyncio
async def test_invitation_for_someone_else_is_refused():
    hid = seed_household("owner")
    invitation = seed_invitation(hid, invited_by="owner", invited_user_id="u1")
    gateway = SqlGateway("u2")

    accepted = await gateway.accept_household_invitation(invitation)
    declined = await gateway.decline_household_invitation(invitation)

    assert accepted["error"] == "You are not authorized to accept this invitation"
    assert declined["error"] == "You are not authorized to decline this invitation"
    assert invitation_row(invitation).status == "pending"


@pytest.mark.asyncio
async def test_expired_or_answered_invitation_cannot_be_accepted():
    hid = seed_household("owner")
    expired = seed_invitation(hid, invited_by="owner", invited_user_id="u1",
                              expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    declined = seed_invitation(hid, invited_by="owner", invited_user_id="u1", status="declined")
    gateway = SqlGateway("u1")

    for invitation in (expired, declined):
        result = await gateway.accept_household_invitation(invitation)
        assert result == {"success": False, "error": "Invitation not found or has expired"}
    assert await gateway.list_pending_invitations() == []


@pytest.mark.asyncio
async def test_accepting_as_existing_member_only_closes_invitation():
    hid = seed_household("owner", member_ids=["u1"])
    invitation = seed_invitation(hid, invited_by="owner", invited_user_id="u1")

    result = await SqlGateway("u1").accept_household_invitation(invitation)

    assert result == {"success": True, "message": "You are already a member of this household"}
    assert invitation_row(invitation).status == "accepted"


@pytest.mark.asyncio
async def test_decline_marks_invitation_declined():
    hid = seed_household("owner")
    invitation = seed_invitation(hid, invited_by="owner", invited_user_id="u1")

    assert await SqlGateway("u1").decline_household_invitation(invitation) == {"success": True}
    assert invitation_row(invitation).status == "declined"
    assert "u1" not in active_member_ids(hid)
