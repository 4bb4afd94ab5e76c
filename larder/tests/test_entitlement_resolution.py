"""Entitlement resolution: premium access, trials, capacity table, feature gates."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from larder.core.errors import ConflictError, RemoteCallError
from larder.features.entitlements.service import (
    FREE_LIMITS,
    PREMIUM_LIMITS,
    EntitlementResolver,
    capacity_limits,
    check_feature_access,
    resolve_entitlement,
    trial_status,
)
from larder.features.remote.sql_gateway import SqlGateway
from larder.models.entitlement import SubscriptionProfile, SubscriptionStatus, UNLIMITED
from larder.tests.helpers import seed_free, seed_household, seed_items, seed_premium

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _profile(status, trial_end=None, **kw):
    return SubscriptionProfile(user_id="u1", subscription_status=status, trial_end_at=trial_end, **kw)


@pytest.mark.parametrize("status,trial_end,expected", [
    (SubscriptionStatus.ACTIVE, None, True),
    (SubscriptionStatus.TRIALING, NOW + timedelta(days=2), True),
    (SubscriptionStatus.TRIALING, NOW - timedelta(seconds=1), False),
    (SubscriptionStatus.TRIALING, None, False),
    (SubscriptionStatus.FREE, None, False),
    (SubscriptionStatus.CANCELED, None, False),
    (SubscriptionStatus.PAST_DUE, None, False),
    (SubscriptionStatus.INCOMPLETE, None, False),
])
def test_is_active_iff_active_or_unexpired_trial(status, trial_end, expected):
    ent = resolve_entitlement(_profile(status, trial_end), NOW)
    assert ent.is_active is expected
    assert ent.limits == (PREMIUM_LIMITS if expected else FREE_LIMITS)


def test_expired_trial_by_one_second():
    ent = resolve_entitlement(_profile(SubscriptionStatus.TRIALING, NOW - timedelta(seconds=1)), NOW)
    assert ent.is_active is False
    assert ent.is_trialing is False
    assert ent.days_left_in_trial == 0


def test_days_left_rounds_up_partial_days():
    ent = resolve_entitlement(_profile(SubscriptionStatus.TRIALING, NOW + timedelta(days=1, hours=12)), NOW)
    assert ent.is_trialing is True
    assert ent.days_left_in_trial == 2


def test_naive_now_treated_as_utc():
    naive = NOW.replace(tzinfo=None)
    ent = resolve_entitlement(_profile(SubscriptionStatus.TRIALING, NOW + timedelta(hours=1)), naive)
    assert ent.is_active is True
    assert ent.days_left_in_trial == 1


def test_capacity_table():
    free = capacity_limits(False)
    premium = capacity_limits(True)
    assert (free.max_households, free.max_items_per_household, free.max_household_members) == (1, 20, 5)
    assert (premium.max_households, premium.max_items_per_household, premium.max_household_members) == (5, UNLIMITED, 20)


def test_trial_status_without_trial_offers_full_trial():
    status = trial_status(_profile(SubscriptionStatus.FREE), NOW)
    assert status.is_eligible_for_trial is True
    assert status.is_trialing is False
    assert status.days_remaining == 7


def test_trial_status_used_trial_not_eligible():
    status = trial_status(
        _profile(SubscriptionStatus.CANCELED, NOW - timedelta(days=3), has_used_trial=True), NOW
    )
    assert status.is_eligible_for_trial is False
    assert status.days_remaining == 0


def test_feature_access_mapping():
    free = resolve_entitlement(_profile(SubscriptionStatus.FREE), NOW)
    premium = resolve_entitlement(_profile(SubscriptionStatus.ACTIVE), NOW)

    assert check_feature_access("multiple_households", free, active_households=1) is True
    assert check_feature_access("multiple_households", free, active_households=2) is False
    assert check_feature_access("multiple_households", premium, active_households=3) is True

    for feature in ("unlimited_items", "barcode_scanning", "advanced_notifications", "waste_analytics", "recipe_export"):
        assert check_feature_access(feature, free) is False
        assert check_feature_access(feature, free, owner_has_premium=True) is True
        assert check_feature_access(feature, premium) is True

    assert check_feature_access("something_new", free) is True


@pytest.mark.asyncio
async def test_resolver_fails_open_to_free():
    gateway = SqlGateway("u1")
    with patch.object(gateway, "get_profile", AsyncMock(side_effect=RuntimeError("network down"))):
        ent = await EntitlementResolver(gateway).resolve()
    assert ent.is_active is False
    assert ent.limits == FREE_LIMITS


@pytest.mark.asyncio
async def test_strict_resolve_raises_on_failed_read():
    gateway = SqlGateway("u1")
    with patch.object(gateway, "get_profile", AsyncMock(side_effect=RuntimeError("network down"))):
        with pytest.raises(RemoteCallError):
            await EntitlementResolver(gateway).resolve(strict=True)


@pytest.mark.asyncio
async def test_resolver_missing_profile_is_free():
    ent = await EntitlementResolver(SqlGateway("nobody")).resolve()
    assert ent.is_active is False
    assert ent.status == SubscriptionStatus.FREE


@pytest.mark.asyncio
async def test_resolver_reads_profile():
    seed_premium("u1")
    ent = await EntitlementResolver(SqlGateway("u1")).resolve()
    assert ent.is_active is True
    assert ent.plan_id == "premium_monthly"


@pytest.mark.asyncio
async def test_start_trial_once():
    seed_free("u1")
    resolver = EntitlementResolver(SqlGateway("u1"), clock=lambda: NOW)

    ent = await resolver.start_trial("premium_monthly")
    assert ent.is_trialing is True
    assert ent.days_left_in_trial == 7

    stored = await resolver.resolve()
    assert stored.status == SubscriptionStatus.TRIALING
    assert stored.is_active is True

    status = await resolver.trial_status()
    assert status.has_used_trial is True
    assert status.is_eligible_for_trial is False

    with pytest.raises(ConflictError):
        await resolver.start_trial("premium_monthly")


@pytest.mark.asyncio
async def test_household_premium_inherited_from_owner():
    seed_premium("owner")
    seed_free("member")
    hid = seed_household("owner", member_ids=["member"], max_members=20)
    seed_items(hid, 25)

    limits = await EntitlementResolver(SqlGateway("member")).household_limits(hid)
    assert limits.household_owner_has_premium is True
    assert limits.item_limit == UNLIMITED
    assert limits.can_add_items is True


@pytest.mark.asyncio
async def test_free_owner_household_counts_active_items():
    seed_free("owner")
    seed_premium("member")  # the viewer's own premium does not lift the household limit
    hid = seed_household("owner", member_ids=["member"])
    seed_items(hid, 20)
    seed_items(hid, 3, status="consumed")

    limits = await EntitlementResolver(SqlGateway("member")).household_limits(hid)
    assert limits.household_owner_has_premium is False
    assert limits.item_count == 20
    assert limits.item_limit == 20
    assert limits.member_count == 2
    assert limits.has_reached_item_limit is True


@pytest.mark.asyncio
async def test_household_limits_fall_back_to_free_on_error():
    hid = seed_household("owner", member_ids=["member"])
    seed_items(hid, 4)
    gateway = SqlGateway("member")
    with patch.object(gateway, "has_premium_access", AsyncMock(side_effect=RuntimeError("rpc failed"))):
        limits = await EntitlementResolver(gateway).household_limits(hid)
    assert limits.item_limit == 20
    assert limits.item_count == 0
    assert limits.household_owner_has_premium is False
