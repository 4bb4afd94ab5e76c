"""Household service: creation limits, switching, member management, error mapping."""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from larder.core.database import get_db_session, households
from larder.core.errors import (
    ConflictError,
    HouseholdCreationError,
    LimitExceededError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from larder.features.entitlements.service import free_entitlement, resolve_entitlement
from larder.features.households.service import HouseholdService, generate_invite_code
from larder.features.remote.gateway import raise_for_rpc_error
from larder.features.remote.sql_gateway import SqlGateway, seed_profile
from larder.models.entitlement import SubscriptionProfile, SubscriptionStatus
from larder.realtime.hub import ROSTER_REFRESH_REQUESTED, SessionHub
from larder.tests.helpers import (
    EventRecorder,
    active_household_ids,
    active_member_ids,
    add_member,
    invitation_row,
    seed_household,
    seed_invitation,
)

PREMIUM = resolve_entitlement(SubscriptionProfile(user_id="u1", subscription_status=SubscriptionStatus.ACTIVE))


def _service(user_id="u1", *, premium=False, hub=None):
    ent = PREMIUM if premium else free_entitlement()
    return HouseholdService(SqlGateway(user_id), hub or SessionHub(), entitlement_source=lambda: ent)


def test_invite_code_shape():
    code = generate_invite_code()
    assert len(code) == 8
    assert code == code.upper()
    assert code.isalnum()


@pytest.mark.asyncio
async def test_free_user_household_gets_five_members():
    hub = SessionHub()
    recorder = EventRecorder()
    await hub.subscribe(ROSTER_REFRESH_REQUESTED, recorder)

    household = await _service(hub=hub).create_household("  Flat 3  ")
    assert household.name == "Flat 3"
    assert household.max_members == 5
    assert household.created_by == "u1"
    assert active_household_ids("u1") == [household.id]
    assert recorder.of(ROSTER_REFRESH_REQUESTED)[0]["reason"] == "household_created"


@pytest.mark.asyncio
async def test_premium_user_household_gets_twenty_members():
    household = await _service(premium=True).create_household("Cabin")
    assert household.max_members == 20


@pytest.mark.asyncio
async def test_free_user_limited_to_one_active_household():
    seed_household("u1")
    with pytest.raises(LimitExceededError):
        await _service().create_household("Second")


@pytest.mark.asyncio
async def test_premium_user_limited_to_five_active_households():
    for i in range(5):
        seed_household("u1", name=f"H{i}")
    with pytest.raises(LimitExceededError):
        await _service(premium=True).create_household("Sixth")


@pytest.mark.asyncio
async def test_blank_name_rejected():
    with pytest.raises(ValidationError):
        await _service().create_household("   ")


@pytest.mark.asyncio
async def test_create_cleans_up_when_membership_insert_fails():
    service = _service()
    with patch.object(service.gateway, "insert_membership", AsyncMock(side_effect=RuntimeError("boom"))):
        with pytest.raises(HouseholdCreationError):
            await service.create_household("Doomed")

    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(households)).scalar() == 0


@pytest.mark.asyncio
async def test_free_switch_deactivates_other_households():
    seed_household("u1", name="A")
    b = seed_household("someone", name="B")
    add_member(b, "u1", is_active=False)

    result = await _service().switch_active_household(b)
    assert result["success"] is True
    assert active_household_ids("u1") == [b]


@pytest.mark.asyncio
async def test_free_switch_to_foreign_household_is_forbidden():
    seed_household("u1")
    foreign = seed_household("stranger")
    with pytest.raises(PermissionError):
        await _service().switch_active_household(foreign)


@pytest.mark.asyncio
async def test_premium_switch_adds_an_active_household():
    a = seed_household("u1", name="A")
    b = seed_household("someone", name="B")
    add_member(b, "u1", is_active=False)

    await _service(premium=True).switch_active_household(b)
    assert sorted(active_household_ids("u1")) == sorted([a, b])


@pytest.mark.asyncio
async def test_premium_switch_respects_active_cap():
    for i in range(5):
        seed_household("u1", name=f"H{i}")
    extra = seed_household("someone", name="Extra")
    add_member(extra, "u1", is_active=False)

    with pytest.raises(LimitExceededError):
        await _service(premium=True).switch_active_household(extra)


@pytest.mark.asyncio
async def test_premium_switch_unknown_household():
    with pytest.raises(NotFoundError):
        await _service(premium=True).switch_active_household("nope")


@pytest.mark.asyncio
async def test_member_listing_hides_email_from_members():
    seed_profile("owner", email="owner@example.com", username="own")
    seed_profile("m1", email="m1@example.com", username="mem")
    hid = seed_household("owner", member_ids=["m1"])

    as_owner = await _service("owner").get_household_members(hid)
    as_member = await _service("m1").get_household_members(hid)

    assert [m.user_id for m in as_owner] == ["owner", "m1"]
    assert as_owner[1].email == "m1@example.com"
    assert all(m.email is None for m in as_member)


@pytest.mark.asyncio
async def test_member_listing_requires_membership():
    hid = seed_household("owner")
    with pytest.raises(PermissionError):
        await _service("stranger").get_household_members(hid)


@pytest.mark.asyncio
async def test_remove_member_rules():
    hid = seed_household("owner", member_ids=["m1", "m2"])
    add_member(hid, "co-owner", role="owner")

    with pytest.raises(PermissionError):
        await _service("m1").remove_household_member(hid, "m2")
    with pytest.raises(PermissionError):
        await _service("owner").remove_household_member(hid, "co-owner")
    with pytest.raises(NotFoundError):
        await _service("owner").remove_household_member(hid, "ghost")

    await _service("owner").remove_household_member(hid, "m1")
    assert "m1" not in active_member_ids(hid)


@pytest.mark.asyncio
async def test_transfer_ownership_swaps_roles():
    hid = seed_household("owner", member_ids=["m1"])
    await _service("owner").transfer_household_ownership(hid, "m1")

    members = {m.user_id: m.role.value for m in await _service("m1").get_household_members(hid)}
    assert members == {"owner": "member", "m1": "owner"}
    household = await SqlGateway("m1").get_household(hid)
    assert household.created_by == "m1"


@pytest.mark.asyncio
async def test_settings_bounds():
    hid = seed_household("owner", member_ids=["m1", "m2"], max_members=5)
    service = _service("owner")

    with pytest.raises(ValidationError):
        await service.update_household_settings(hid, max_members=2)
    with pytest.raises(ValidationError):
        await service.update_household_settings(hid, max_members=21)
    with pytest.raises(PermissionError):
        await _service("m1").update_household_settings(hid, name="Mine now")

    await service.update_household_settings(hid, name="Renamed", max_members=10)
    household = await service.gateway.get_household(hid)
    assert (household.name, household.max_members) == ("Renamed", 10)


@pytest.mark.asyncio
async def test_reactivate_requires_free_slot():
    hid = seed_household("owner", member_ids=["m1", "m2", "m3"], max_members=5)
    add_member(hid, "benched", is_active=False)
    service = _service("owner")

    await service.reactivate_household_member(hid, "benched")
    assert "benched" in active_member_ids(hid)

    add_member(hid, "late", is_active=False)
    with pytest.raises(ConflictError):
        await service.reactivate_household_member(hid, "late")


@pytest.mark.asyncio
async def test_reactivate_active_member_is_not_found():
    hid = seed_household("owner", member_ids=["m1"])
    with pytest.raises(NotFoundError):
        await _service("owner").reactivate_household_member(hid, "m1")


@pytest.mark.asyncio
async def test_downgrade_status_parsed():
    hid = seed_household("owner", member_ids=["m1"], max_members=20)
    status = await _service("m1").get_household_downgrade_status(hid)
    assert status.max_members == 20
    assert status.current_member_count == 2
    assert status.was_premium is False
    assert status.is_overcapacity is False


@pytest.mark.parametrize("error,expected", [
    ("Household not found", NotFoundError),
    ("User is not a member of this household", NotFoundError),
    ("You are not a member of this household", PermissionError),
    ("Only household owners can remove members", PermissionError),
    ("Cannot remove other owners. Transfer ownership first.", PermissionError),
    ("Household is at capacity (5/5 members)", ConflictError),
    ("Cannot reduce member limit below current member count", ValidationError),
    ("Failed to switch household - database consistency error", ConflictError),
    ("Invitation not found or has expired", NotFoundError),
    ("You are not authorized to accept this invitation", PermissionError),
    ("Your email does not match the invitation", PermissionError),
    ("Household has reached its member limit", ConflictError),
])
def test_rpc_error_mapping(error, expected):
    with pytest.raises(expected):
        raise_for_rpc_error({"success": False, "error": error})


def test_rpc_success_passes_through():
    result = {"success": True, "message": "ok"}
    assert raise_for_rpc_error(result) is result


@pytest.mark.asyncio
async def test_free_user_accepting_invitation_keeps_one_active_household():
    own = seed_household("u1", name="Mine")
    other = seed_household("alice", name="Alice's")
    invitation = seed_invitation(other, invited_by="alice", invited_user_id="u1")
    hub = SessionHub()
    recorder = EventRecorder()
    await hub.subscribe(ROSTER_REFRESH_REQUESTED, recorder)

    result = await _service(hub=hub).accept_invitation(invitation)

    assert result.success is True
    assert result.household_id == other
    assert active_household_ids("u1") == [other]
    assert own not in active_household_ids("u1")
    assert recorder.of(ROSTER_REFRESH_REQUESTED)[-1]["reason"] == "invitation_accepted"


@pytest.mark.asyncio
async def test_premium_user_accepting_invitation_keeps_other_households():
    own = seed_household("u1", name="Mine")
    other = seed_household("alice", name="Alice's")
    invitation = seed_invitation(other, invited_by="alice", invited_user_id="u1")

    await _service(premium=True).accept_invitation(invitation)

    assert sorted(active_household_ids("u1")) == sorted([own, other])


@pytest.mark.asyncio
async def test_premium_user_at_active_limit_cannot_accept():
    for i in range(5):
        seed_household("u1", name=f"H{i}")
    other = seed_household("alice")
    invitation = seed_invitation(other, invited_by="alice", invited_user_id="u1")

    with pytest.raises(LimitExceededError):
        await _service(premium=True).accept_invitation(invitation)
    assert "u1" not in active_member_ids(other)
    assert invitation_row(invitation).status == "pending"


@pytest.mark.asyncio
async def test_full_household_refuses_invitation():
    own = seed_household("u1", name="Mine")
    full = seed_household("alice", member_ids=["m1", "m2", "m3", "m4"])
    invitation = seed_invitation(full, invited_by="alice", invited_user_id="u1")

    with pytest.raises(ConflictError):
        await _service().accept_invitation(invitation)

    assert active_household_ids("u1") == [own]
    assert len(active_member_ids(full)) == 5


@pytest.mark.asyncio
async def test_decline_invitation():
    hid = seed_household("alice")
    invitation = seed_invitation(hid, invited_by="alice", invited_user_id="u1")

    result = await _service().decline_invitation(invitation)

    assert result.success is True
    assert invitation_row(invitation).status == "declined"
    with pytest.raises(NotFoundError):
        await _service().decline_invitation(invitation)


@pytest.mark.asyncio
async def test_owner_invites_by_email():
    hid = seed_household("alice")
    seed_profile("u1", email="u1@example.com")

    invitation = await _service("alice").invite_member(hid, email=" u1@example.com ", message="Join us")

    assert invitation.invited_email == "u1@example.com"
    assert invitation.invited_by == "alice"
    pending = await _service("u1").list_pending_invitations()
    assert [i.id for i in pending] == [invitation.id]


@pytest.mark.asyncio
async def test_invite_member_rules():
    hid = seed_household("alice", member_ids=["m1"])
    full = seed_household("bob", member_ids=["b1", "b2", "b3", "b4"])

    with pytest.raises(ValidationError):
        await _service("alice").invite_member(hid)
    with pytest.raises(PermissionError):
        await _service("m1").invite_member(hid, invited_user_id="u1")
    with pytest.raises(ConflictError):
        await _service("bob").invite_member(full, invited_user_id="u1")
