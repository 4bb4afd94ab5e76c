"""
larder/features/downgrade/reconciler.py

Restores free-tier invariants after a premium -> free transition.

State machine per user:
- compliant: no owned household above free capacity, at most one active
- overcapacity: stale premium capacity, or several active households
- reconciled: capacity downgraded and a single active household chosen

Capacity is fixed automatically (remote downgrade procedure per household).
Choosing which household stays active is left to the user: a
non-cancelable ``household.selection_required`` event is published and no
household is picked here.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from larder.core.logging import log_event
from larder.features.entitlements.service import FREE_LIMITS
from larder.features.remote.gateway import raise_for_rpc_error
from larder.models.downgrade import (
    HouseholdDowngradeOutcome,
    ReconciliationReport,
    ReconciliationState,
    SelectionCandidate,
)
from larder.models.entitlement import Entitlement
from larder.models.household import DowngradeResult, Household, RosterEntry
from larder.realtime.hub import HOUSEHOLD_SELECTION_REQUIRED, ROSTER_REFRESH_REQUESTED

logger = logging.getLogger(__name__)


class DowngradeReconciler:
    """
    Args:
        gateway: RemoteGateway bound to the session user
        hub: SessionHub for selection and refresh events
        notifications: NotificationQueue receiving overcapacity notices
        entitlement_source: returns the current Entitlement; premium users
            are always compliant
    """

    def __init__(
        self,
        gateway,
        hub,
        notifications,
        *,
        entitlement_source: Optional[Callable[[], Entitlement]] = None,
    ):
        self.gateway = gateway
        self.hub = hub
        self.notifications = notifications
        self.entitlement_source = entitlement_source
        self.state = ReconciliationState.COMPLIANT
        self._running = False

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    def _is_premium(self) -> bool:
        return bool(self.entitlement_source and self.entitlement_source().is_active)

    async def assess(self) -> Tuple[ReconciliationState, List[Household], List[RosterEntry]]:
        """
        Classify the user's current state.

        Returns:
            (state, owned households above free capacity, active memberships)
        """
        if self._is_premium():
            return ReconciliationState.COMPLIANT, [], []

        stale = await self.gateway.list_owned_households(
            self.user_id, min_max_members=FREE_LIMITS.max_household_members
        )
        active = await self.gateway.fetch_memberships(active_only=True)
        if stale or len(active) > FREE_LIMITS.max_households:
            return ReconciliationState.OVERCAPACITY, stale, active
        return ReconciliationState.COMPLIANT, stale, active

    async def reconcile(self) -> ReconciliationReport:
        """
        Run one reconciliation pass.

        Idempotent: a compliant user gets no writes and no notification.
        Concurrent calls while a pass runs are skipped.
        """
        if self._running:
            logger.info("[downgrade] reconciliation already running, skipping", extra={"user_id": self.user_id})
            return ReconciliationReport(state=self.state, skipped=True)

        self._running = True
        try:
            return await self._reconcile()
        finally:
            self._running = False

    async def _reconcile(self) -> ReconciliationReport:
        try:
            state, stale, _ = await self.assess()
        except Exception as e:
            logger.error("[downgrade] assessment failed, nothing reconciled", extra={"user_id": self.user_id, "error": str(e)})
            return ReconciliationReport(state=self.state)

        if state == ReconciliationState.COMPLIANT:
            logger.debug("[downgrade] compliant, nothing to do", extra={"user_id": self.user_id})
            self.state = state
            return ReconciliationReport(state=state)

        self.state = ReconciliationState.OVERCAPACITY
        logger.info(
            "[downgrade] overcapacity detected",
            extra={"user_id": self.user_id, "stale_households": len(stale)},
        )

        outcomes = []
        notifications = []
        for household in stale:
            outcome = await self._downgrade_household(household)
            outcomes.append(outcome)
            if outcome.success and outcome.members_made_inactive > 0:
                notification = await self.notifications.push(
                    household_id=household.id,
                    household_name=household.name,
                    members_made_inactive=outcome.members_made_inactive,
                    original_member_count=outcome.original_member_count or 0,
                    current_member_count=outcome.current_member_count or 0,
                )
                if notification is not None:
                    notifications.append(notification)

        try:
            active = await self.gateway.fetch_memberships(active_only=True)
        except Exception as e:
            logger.error("[downgrade] active household fetch failed", extra={"user_id": self.user_id, "error": str(e)})
            active = []

        candidates = [SelectionCandidate(household_id=e.household_id, name=e.household.name) for e in active]
        selection_required = len(active) > FREE_LIMITS.max_households
        if selection_required:
            await self.hub.publish(HOUSEHOLD_SELECTION_REQUIRED, {
                "user_id": self.user_id,
                "cancelable": False,
                "candidates": [c.model_dump() for c in candidates],
            })
        else:
            self.state = ReconciliationState.RECONCILED

        await self.hub.publish(ROSTER_REFRESH_REQUESTED, {"reason": "downgrade", "user_id": self.user_id})

        report = ReconciliationReport(
            state=self.state,
            outcomes=outcomes,
            notifications=notifications,
            selection_required=selection_required,
            candidates=candidates if selection_required else [],
        )
        log_event(
            "info",
            "[downgrade] reconciliation finished",
            user_id=self.user_id,
            event_type="downgrade.reconciled",
            extra={
                "state": report.state.value,
                "households": len(outcomes),
                "members_made_inactive": report.members_made_inactive,
                "selection_required": selection_required,
            },
        )
        return report

    async def _downgrade_household(self, household: Household) -> HouseholdDowngradeOutcome:
        try:
            raw = await self.gateway.downgrade_premium_household(household.id, self.user_id)
        except Exception as e:
            logger.error(
                "[downgrade] downgrade call failed",
                extra={"user_id": self.user_id, "household_id": household.id, "error": str(e)},
            )
            return HouseholdDowngradeOutcome(
                household_id=household.id, household_name=household.name, success=False, error=str(e)
            )

        result = DowngradeResult(**{k: v for k, v in raw.items() if k in DowngradeResult.model_fields})
        if not result.success:
            logger.warning(
                "[downgrade] household not downgraded",
                extra={"user_id": self.user_id, "household_id": household.id, "error": result.error},
            )
        return HouseholdDowngradeOutcome(
            household_id=household.id,
            household_name=household.name,
            success=result.success,
            members_made_inactive=result.members_made_inactive,
            original_member_count=result.original_member_count,
            current_member_count=result.current_member_count,
            error=result.error,
        )

    async def select_active_household(self, household_id: str) -> Dict[str, Any]:
        """Resolve the pending selection: keep ``household_id`` active, deactivate the rest."""
        result = raise_for_rpc_error(await self.gateway.switch_active_household(self.user_id, household_id))
        self.state = ReconciliationState.RECONCILED
        logger.info(
            "[downgrade] active household selected",
            extra={"user_id": self.user_id, "household_id": household_id},
        )
        await self.hub.publish(ROSTER_REFRESH_REQUESTED, {"reason": "household_selected", "user_id": self.user_id})
        return result
