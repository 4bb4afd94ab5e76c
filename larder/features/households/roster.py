"""
larder/features/households/roster.py

Household roster for the session user.

Loads the user's active memberships (owner-first), keeps the selected
household, and creates the default household once onboarding allows it.
Fetch failures leave an empty roster; nothing here retries forever.
"""

import logging
from typing import Callable, List, Optional

from larder.core.config import settings
from larder.core.errors import HouseholdCreationError, NotFoundError
from larder.core.retry import RetryPolicy, roster_retry_policy
from larder.features.entitlements.service import capacity_limits
from larder.features.households.service import create_household_with_owner
from larder.models.household import (
    OnboardingChoice,
    OnboardingState,
    RosterEntry,
    roster_household_ids,
)
from larder.realtime.hub import ROSTER_UPDATED

logger = logging.getLogger(__name__)


class RosterLoader:
    """
    Read-through cache of the user's active households.

    Args:
        gateway: RemoteGateway bound to the session user
        hub: SessionHub receiving ``roster.updated``
        is_premium: returns whether the user currently has premium access
        retry_policy: replication-lag retry after onboarding created/joined
    """

    def __init__(
        self,
        gateway,
        hub,
        *,
        is_premium: Optional[Callable[[], bool]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.gateway = gateway
        self.hub = hub
        self.is_premium = is_premium or (lambda: False)
        self.retry_policy = retry_policy or roster_retry_policy()
        self.entries: List[RosterEntry] = []
        self.selected_household_id: Optional[str] = None
        self.loaded = False
        self._in_flight = False

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    @property
    def selected(self) -> Optional[RosterEntry]:
        for entry in self.entries:
            if entry.household_id == self.selected_household_id:
                return entry
        return None

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight

    async def refresh(self) -> List[RosterEntry]:
        """
        Reload the roster.

        Overlapping calls while a refresh runs return the current entries
        without fetching.
        """
        if self._in_flight:
            logger.debug("[roster] refresh already in flight, skipping", extra={"user_id": self.user_id})
            return self.entries

        self._in_flight = True
        try:
            entries = await self._fetch()
            if entries is None:
                # Fetch error: fail open to an empty roster
                await self._apply([])
                return self.entries
            if not entries:
                entries = await self._load_when_empty()
            await self._apply(entries)
            return self.entries
        finally:
            self._in_flight = False

    def select(self, household_id: str) -> RosterEntry:
        """Change the selected household; it must be in the roster."""
        for entry in self.entries:
            if entry.household_id == household_id:
                self.selected_household_id = household_id
                return entry
        raise NotFoundError("Household is not in your active roster")

    def clear(self) -> None:
        self.entries = []
        self.selected_household_id = None
        self.loaded = False

    async def _fetch(self) -> Optional[List[RosterEntry]]:
        try:
            return await self.gateway.fetch_memberships(active_only=True)
        except Exception as e:
            logger.error("[roster] membership fetch failed", extra={"user_id": self.user_id, "error": str(e)})
            return None

    async def _load_when_empty(self) -> List[RosterEntry]:
        try:
            onboarding = OnboardingState.from_metadata(await self.gateway.get_user_metadata())
        except Exception as e:
            logger.error("[roster] user metadata fetch failed", extra={"user_id": self.user_id, "error": str(e)})
            return []

        if onboarding.in_onboarding_flow or not onboarding.onboarding_completed:
            logger.info(
                "[roster] no households yet, onboarding not finished",
                extra={"user_id": self.user_id, "in_onboarding_flow": onboarding.in_onboarding_flow},
            )
            return []

        if onboarding.household_choice in (OnboardingChoice.CREATED, OnboardingChoice.JOINED):
            # Another flow just wrote the membership; wait out replication lag
            for attempt, delay in self.retry_policy.schedule():
                logger.info(
                    "[roster] empty after onboarding, retrying",
                    extra={"user_id": self.user_id, "attempt": attempt, "delay": delay},
                )
                await self.retry_policy.wait(delay)
                entries = await self._fetch()
                if entries is None:
                    return []
                if entries:
                    return entries

        return await self._create_default_household()

    async def _create_default_household(self) -> List[RosterEntry]:
        limits = capacity_limits(self.is_premium())
        try:
            await create_household_with_owner(
                self.gateway,
                name=settings.DEFAULT_HOUSEHOLD_NAME,
                owner_id=self.user_id,
                max_members=limits.max_household_members,
            )
        except HouseholdCreationError as e:
            logger.error("[roster] default household creation failed", extra={"user_id": self.user_id, "error": e.message})
            return []
        return await self._fetch() or []

    async def _apply(self, entries: List[RosterEntry]) -> None:
        self.entries = list(entries)
        self.loaded = True
        ids = roster_household_ids(self.entries)
        if self.selected_household_id not in ids:
            self.selected_household_id = ids[0] if ids else None
        await self.hub.publish(ROSTER_UPDATED, {
            "user_id": self.user_id,
            "household_ids": ids,
            "selected_household_id": self.selected_household_id,
        })
