"""
larder/features/session/service.py

Household session: the per-login container for household state.

Created at login and torn down at logout. Owns the hub, the gateway and
every household component; components are injected by constructor and talk
to each other only through hub topics.
"""

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import Any, Dict, Optional

from larder.core.logging import request_id_ctx_var
from larder.core.retry import RetryPolicy
from larder.features.downgrade.reconciler import DowngradeReconciler
from larder.features.entitlements.monitor import EntitlementMonitor
from larder.features.entitlements.service import EntitlementResolver
from larder.features.households.roster import RosterLoader
from larder.features.households.service import HouseholdService
from larder.features.notifications.service import NotificationQueue
from larder.models.entitlement import Entitlement
from larder.realtime.hub import ROSTER_REFRESH_REQUESTED, SessionHub

logger = logging.getLogger(__name__)


class HouseholdSession:
    """
    Args:
        gateway: RemoteGateway bound to the signed-in user
        hub: event hub (a fresh SessionHub by default)
        retry_policy: roster replication-lag retry schedule
        monitor_options: extra EntitlementMonitor keyword arguments
            (clock, sleep, intervals)
    """

    def __init__(
        self,
        gateway,
        *,
        hub: Optional[SessionHub] = None,
        retry_policy: Optional[RetryPolicy] = None,
        monitor_options: Optional[Dict[str, Any]] = None,
    ):
        self.session_id = str(uuid.uuid4())
        self.gateway = gateway
        self.hub = hub or SessionHub()

        self.resolver = EntitlementResolver(gateway)
        self.notifications = NotificationQueue(gateway, self.hub)
        self.reconciler = DowngradeReconciler(
            gateway, self.hub, self.notifications, entitlement_source=self.current_entitlement
        )
        self.monitor = EntitlementMonitor(
            self.resolver,
            self.hub,
            on_downgrade=self.reconciler.reconcile,
            **(monitor_options or {}),
        )
        self.roster = RosterLoader(
            gateway,
            self.hub,
            is_premium=lambda: self.monitor.is_premium,
            retry_policy=retry_policy,
        )
        self.households = HouseholdService(gateway, self.hub, entitlement_source=self.current_entitlement)

        self._subscription = None
        self._consumer: Optional[asyncio.Task] = None
        self._context_token = None
        self.started = False

    @property
    def user_id(self) -> str:
        return self.gateway.user_id

    @property
    def selected_household_id(self) -> Optional[str]:
        return self.roster.selected_household_id

    def current_entitlement(self) -> Entitlement:
        return self.monitor.current

    async def _on_refresh_requested(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.roster.refresh()

    async def start(self) -> None:
        """
        Resolve entitlement, load the roster, start timers and the realtime consumer.

        A user who resolves free at sign-in gets one reconciliation pass; it is
        a no-op when their households are already compliant.
        """
        if self.started:
            return
        self._context_token = request_id_ctx_var.set(self.session_id)
        logger.info("[session] starting", extra={"user_id": self.user_id, "session_id": self.session_id})

        await self.hub.subscribe(ROSTER_REFRESH_REQUESTED, self._on_refresh_requested)
        await self.monitor.on_auth_change(True)
        if self.monitor.has_resolved and not self.monitor.is_premium:
            # Premium may have lapsed while signed out
            await self.reconciler.reconcile()
        await self.roster.refresh()

        self._subscription = self.gateway.subscribe_membership_changes()
        self._consumer = asyncio.create_task(self._consume_membership_changes(self._subscription))
        self.started = True

    async def _consume_membership_changes(self, subscription) -> None:
        try:
            async for change in subscription:
                logger.debug(
                    "[session] membership change",
                    extra={"user_id": self.user_id, "event_type": change.event_type, "household_id": change.household_id},
                )
                await self.roster.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[session] membership feed stopped", extra={"user_id": self.user_id, "error": str(e)})

    async def on_foreground(self) -> Optional[Entitlement]:
        return await self.monitor.on_foreground()

    async def close(self) -> None:
        """Stop timers and the feed, clear session state, release the gateway."""
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            with suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None

        await self.monitor.on_auth_change(False)
        self.roster.clear()
        await self.hub.clear()
        await self.gateway.aclose()
        self.started = False
        logger.info("[session] closed", extra={"user_id": self.user_id, "session_id": self.session_id})
        if self._context_token is not None:
            # A token created in another context cannot be reset here
            with suppress(ValueError):
                request_id_ctx_var.reset(self._context_token)
            self._context_token = None
