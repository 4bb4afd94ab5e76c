"""
larder/features/entitlements/monitor.py

Re-evaluates the session user's entitlement and detects premium loss.

Triggers:
- auth state change (login resolves, logout resets to free)
- app foregrounding once the last check is older than the stale window
- periodic timer

One check runs at a time; overlapping triggers return immediately. A
premium -> free edge invokes the downgrade handler once per edge; a failed
read keeps the last known entitlement.
"""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

from larder.core.config import settings
from larder.core.errors import RemoteCallError
from larder.core.retry import Sleeper
from larder.features.entitlements.service import free_entitlement
from larder.models.entitlement import Entitlement
from larder.realtime.hub import ENTITLEMENT_CHANGED

logger = logging.getLogger(__name__)

DowngradeHandler = Callable[[], Awaitable[Any]]


class EntitlementMonitor:
    """
    Args:
        resolver: EntitlementResolver for the session user
        hub: SessionHub receiving ``entitlement.changed``
        on_downgrade: coroutine run on a premium -> free edge
        monotonic: clock used for the foreground stale window
        sleep: timer used by the periodic task
    """

    def __init__(
        self,
        resolver,
        hub,
        *,
        on_downgrade: Optional[DowngradeHandler] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        refresh_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
    ):
        self.resolver = resolver
        self.hub = hub
        self.on_downgrade = on_downgrade
        self.monotonic = monotonic
        self.sleep = sleep
        self.refresh_interval = refresh_interval if refresh_interval is not None else settings.ENTITLEMENT_REFRESH_INTERVAL_SECONDS
        self.stale_after = stale_after if stale_after is not None else settings.ENTITLEMENT_FOREGROUND_STALE_SECONDS

        self.current: Entitlement = free_entitlement()
        self._previous_active: Optional[bool] = None
        self._last_checked: Optional[float] = None
        self._in_flight = False
        self._timer: Optional[asyncio.Task] = None

    @property
    def is_premium(self) -> bool:
        return self.current.is_active

    @property
    def has_resolved(self) -> bool:
        """True once a check has completed since sign-in."""
        return self._previous_active is not None

    @property
    def is_checking(self) -> bool:
        return self._in_flight

    async def check(self, reason: str = "manual") -> Optional[Entitlement]:
        """
        Resolve the entitlement once.

        A failed profile read leaves the last known entitlement in place and
        is never treated as premium loss.

        Returns:
            The new entitlement, or None when another check was in flight or
            the read failed
        """
        if self._in_flight:
            logger.debug("[entitlement] check already in flight", extra={"reason": reason})
            return None

        self._in_flight = True
        try:
            try:
                entitlement = await self.resolver.resolve(strict=True)
            except RemoteCallError as e:
                logger.warning(
                    "[entitlement] check failed, keeping previous entitlement",
                    extra={
                        "user_id": self.resolver.user_id,
                        "reason": reason,
                        "is_active": self.current.is_active,
                        "error": str(e),
                    },
                )
                return None

            previous = self._previous_active
            self.current = entitlement
            self._previous_active = entitlement.is_active
            self._last_checked = self.monotonic()

            await self.hub.publish(ENTITLEMENT_CHANGED, {
                "user_id": self.resolver.user_id,
                "reason": reason,
                "is_active": entitlement.is_active,
                "previous_is_active": previous,
                "status": entitlement.status.value if entitlement.status else None,
            })

            if previous is True and not entitlement.is_active:
                logger.info(
                    "[entitlement] premium lost, reconciling households",
                    extra={"user_id": self.resolver.user_id, "reason": reason},
                )
                await self._run_downgrade()
            return entitlement
        finally:
            self._in_flight = False

    async def _run_downgrade(self) -> None:
        if self.on_downgrade is None:
            return
        try:
            await self.on_downgrade()
        except Exception as e:
            logger.error(
                "[entitlement] downgrade handler failed",
                exc_info=True,
                extra={"user_id": self.resolver.user_id, "error": str(e)},
            )

    async def on_auth_change(self, signed_in: bool) -> None:
        if signed_in:
            await self.check("auth")
            self.start()
            return
        await self.stop()
        self.reset()
        await self.hub.publish(ENTITLEMENT_CHANGED, {
            "user_id": self.resolver.user_id,
            "reason": "signed_out",
            "is_active": False,
            "previous_is_active": None,
            "status": self.current.status.value,
        })

    async def on_foreground(self) -> Optional[Entitlement]:
        """Re-check only when the last completed check is older than the stale window."""
        if self._last_checked is not None and self.monotonic() - self._last_checked <= self.stale_after:
            return None
        return await self.check("foreground")

    def reset(self) -> None:
        self.current = free_entitlement()
        self._previous_active = None
        self._last_checked = None

    def start(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._periodic())

    async def stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        with suppress(asyncio.CancelledError):
            await self._timer
        self._timer = None

    async def _periodic(self) -> None:
        while True:
            await self.sleep(self.refresh_interval)
            await self.check("periodic")
