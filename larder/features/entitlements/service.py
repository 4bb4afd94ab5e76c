"""
larder/features/entitlements/service.py

Entitlement resolution: free vs premium access and the capacity table.

Handles:
- Pure resolution of a profile's subscription fields (no I/O)
- Trial bookkeeping and feature gating
- Household-level premium inherited from the household owner
- Structured logs only; read failures fall back to the free tier
"""

from datetime import datetime, timedelta, timezone
from math import ceil
from typing import Optional, Callable
import logging

from larder.core.config import settings
from larder.core.errors import ConflictError, RemoteCallError
from larder.models.entitlement import (
    UNLIMITED,
    CapacityLimits,
    Entitlement,
    SubscriptionProfile,
    SubscriptionStatus,
    TrialStatus,
)
from larder.models.household import HouseholdLimits, MemberRole


logger = logging.getLogger(__name__)

FREE_LIMITS = CapacityLimits(
    max_households=1,
    max_items_per_household=20,
    max_household_members=5,
)
PREMIUM_LIMITS = CapacityLimits(
    max_households=5,
    max_items_per_household=UNLIMITED,
    max_household_members=20,
)

# Features that follow the viewer's own premium or the household owner's
OWNER_INHERITED_FEATURES = frozenset({
    "unlimited_items",
    "barcode_scanning",
    "advanced_notifications",
    "waste_analytics",
    "recipe_export",
})

Clock = Callable[[], datetime]

_DAY_SECONDS = 86400


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _normalize_ts(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _days_left(trial_end: Optional[datetime], now: datetime) -> int:
    if trial_end is None:
        return 0
    remaining = (trial_end - now).total_seconds() / _DAY_SECONDS
    return max(0, ceil(remaining))


def capacity_limits(is_active: bool) -> CapacityLimits:
    """Capacity table; a pure function of premium access."""
    return PREMIUM_LIMITS if is_active else FREE_LIMITS


def free_entitlement() -> Entitlement:
    return Entitlement(status=SubscriptionStatus.FREE, limits=FREE_LIMITS)


def resolve_entitlement(profile: SubscriptionProfile, now: Optional[datetime] = None) -> Entitlement:
    """
    Resolve premium access from subscription fields.

    is_trialing = status == trialing and trial_end > now
    is_active = status == active or is_trialing

    Args:
        profile: Subscription fields of the profile row
        now: Evaluation instant (defaults to current UTC time)
    """
    current = _normalize_now(now)
    status = profile.subscription_status
    trial_end = _normalize_ts(profile.trial_end_at)

    is_trialing = (
        status == SubscriptionStatus.TRIALING
        and trial_end is not None
        and trial_end > current
    )
    is_active = status == SubscriptionStatus.ACTIVE or is_trialing

    return Entitlement(
        is_active=is_active,
        status=status,
        plan_id=profile.subscription_plan_id,
        is_trialing=is_trialing,
        trial_end=trial_end,
        days_left_in_trial=_days_left(trial_end, current),
        limits=capacity_limits(is_active),
    )


def trial_status(profile: SubscriptionProfile, now: Optional[datetime] = None) -> TrialStatus:
    current = _normalize_now(now)
    trial_end = _normalize_ts(profile.trial_end_at)
    is_trialing = (
        profile.subscription_status == SubscriptionStatus.TRIALING
        and trial_end is not None
        and trial_end > current
    )
    return TrialStatus(
        is_trialing=is_trialing,
        is_eligible_for_trial=not profile.has_used_trial,
        trial_started=_normalize_ts(profile.trial_started_at),
        trial_end=trial_end,
        # A user who never trialled still has the full trial ahead of them
        days_remaining=_days_left(trial_end, current) if trial_end else settings.TRIAL_DAYS,
        has_used_trial=profile.has_used_trial,
    )


def check_feature_access(
    feature: str,
    entitlement: Entitlement,
    *,
    owner_has_premium: bool = False,
    active_households: int = 0,
) -> bool:
    """
    Gate a premium feature.

    Unknown features are allowed.
    """
    if feature == "multiple_households":
        return entitlement.is_active or active_households <= 1
    if feature in OWNER_INHERITED_FEATURES:
        return entitlement.is_active or owner_has_premium
    return True


def profile_from_row(user_id: str, row: dict) -> SubscriptionProfile:
    return SubscriptionProfile(
        user_id=user_id,
        subscription_status=row.get("subscription_status") or SubscriptionStatus.FREE,
        subscription_plan_id=row.get("subscription_plan_id"),
        trial_started_at=row.get("trial_started_at"),
        trial_end_at=row.get("trial_end_at"),
        has_used_trial=bool(row.get("has_used_trial", False)),
    )


class EntitlementResolver:
    """
    Resolves the session user's entitlement through the remote gateway.

    Args:
        gateway: RemoteGateway bound to the session user
        clock: returns the current UTC time (injectable for tests)
    """

    def __init__(self, gateway, *, clock: Optional[Clock] = None):
        self.gateway = gateway
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    async def load_profile(self) -> Optional[SubscriptionProfile]:
        row = await self.gateway.get_profile(self.user_id)
        if not row:
            return None
        return profile_from_row(self.user_id, row)

    async def resolve(self, *, strict: bool = False) -> Entitlement:
        """
        Current entitlement.

        A failed profile read resolves to the free tier, unless ``strict`` is
        set, in which case RemoteCallError is raised so the caller can keep
        whatever it last knew.
        """
        try:
            profile = await self.load_profile()
        except Exception as e:
            if strict:
                logger.warning(
                    "[entitlement] profile fetch failed",
                    extra={"user_id": self.user_id, "error": str(e)},
                )
                raise RemoteCallError(f"Profile read failed: {e}") from e
            logger.warning(
                "[entitlement] profile fetch failed, using free tier",
                extra={"user_id": self.user_id, "error": str(e)},
            )
            return free_entitlement()

        if profile is None:
            logger.info("[entitlement] no profile row, using free tier", extra={"user_id": self.user_id})
            return free_entitlement()

        entitlement = resolve_entitlement(profile, self.clock())
        logger.debug(
            "[entitlement] resolved",
            extra={
                "user_id": self.user_id,
                "is_active": entitlement.is_active,
                "status": entitlement.status.value if entitlement.status else None,
                "days_left_in_trial": entitlement.days_left_in_trial,
            },
        )
        return entitlement

    async def trial_status(self) -> TrialStatus:
        profile = await self.load_profile()
        if profile is None:
            profile = SubscriptionProfile(user_id=self.user_id)
        return trial_status(profile, self.clock())

    async def start_trial(self, plan_id: str) -> Entitlement:
        """
        Begin the one-time premium trial.

        Raises:
            ConflictError: the trial was already used
        """
        profile = await self.load_profile() or SubscriptionProfile(user_id=self.user_id)
        if profile.has_used_trial:
            raise ConflictError("Trial already used")

        started = _normalize_now(self.clock())
        trial_end = started + timedelta(days=settings.TRIAL_DAYS)
        await self.gateway.update_profile(self.user_id, {
            "subscription_status": SubscriptionStatus.TRIALING.value,
            "subscription_plan_id": plan_id,
            "trial_started_at": started,
            "trial_end_at": trial_end,
            "has_used_trial": True,
        })
        logger.info(
            "[entitlement] trial started",
            extra={"user_id": self.user_id, "plan_id": plan_id, "trial_end": trial_end.isoformat()},
        )
        return resolve_entitlement(
            profile.model_copy(update={
                "subscription_status": SubscriptionStatus.TRIALING,
                "subscription_plan_id": plan_id,
                "trial_started_at": started,
                "trial_end_at": trial_end,
                "has_used_trial": True,
            }),
            started,
        )

    async def household_owner_id(self, household_id: str) -> Optional[str]:
        rows = await self.gateway.list_membership_rows(household_id)
        for row in rows:
            if row.get("role") == MemberRole.OWNER.value:
                return row["user_id"]
        household = await self.gateway.get_household(household_id)
        return household.created_by if household else None

    async def household_limits(self, household_id: str) -> HouseholdLimits:
        """
        Item and member limits of a household, decided by its owner's premium.

        The viewer's own status never matters here.
        """
        free = HouseholdLimits(
            household_id=household_id,
            item_limit=FREE_LIMITS.max_items_per_household,
            member_limit=FREE_LIMITS.max_household_members,
        )
        try:
            owner_id = await self.household_owner_id(household_id)
            owner_has_premium = bool(owner_id) and await self.gateway.has_premium_access(owner_id)
            if owner_has_premium:
                return HouseholdLimits(
                    household_id=household_id,
                    item_limit=UNLIMITED,
                    member_limit=PREMIUM_LIMITS.max_household_members,
                    household_owner_has_premium=True,
                )
            item_count = await self.gateway.count_items(household_id, status="active")
            member_count = len(await self.gateway.list_membership_rows(household_id))
        except Exception as e:
            logger.warning(
                "[entitlement] household limits check failed, using free limits",
                extra={"household_id": household_id, "error": str(e)},
            )
            return free

        return free.model_copy(update={"item_count": item_count, "member_count": member_count})
