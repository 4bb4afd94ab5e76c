"""
larder/features/remote/realtime.py

Supabase Realtime subscription to household_members changes of one user.

Speaks the Phoenix channel protocol (vsn 1.0.0) over websockets: joins a
channel with a ``postgres_changes`` filter on ``user_id``, keeps it alive
with heartbeats and yields MembershipChange events until closed, rejoining
after a dropped connection.
"""

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from larder.core.config import settings
from larder.core.retry import RetryPolicy, realtime_reconnect_policy
from larder.models.household import MembershipChange

logger = logging.getLogger(__name__)

MEMBERSHIP_TABLE = "household_members"


def realtime_socket_url(project_url: str, anon_key: str) -> str:
    base = project_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime/v1/websocket?{urlencode({'apikey': anon_key, 'vsn': '1.0.0'})}"


def join_message(user_id: str, access_token: str, ref: str = "1") -> Dict[str, Any]:
    return {
        "topic": f"realtime:household-members-{user_id}",
        "event": "phx_join",
        "payload": {
            "config": {
                "postgres_changes": [{
                    "event": "*",
                    "schema": "public",
                    "table": MEMBERSHIP_TABLE,
                    "filter": f"user_id=eq.{user_id}",
                }],
            },
            "access_token": access_token,
        },
        "ref": ref,
    }


def parse_postgres_change(message: Dict[str, Any]) -> Optional[MembershipChange]:
    """MembershipChange for a postgres_changes frame, None for anything else."""
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    if data.get("table", MEMBERSHIP_TABLE) != MEMBERSHIP_TABLE:
        return None
    # DELETE frames only carry old_record
    record = data.get("record") or data.get("old_record") or {}
    return MembershipChange(
        event_type=data.get("type", "UPDATE"),
        household_id=record.get("household_id"),
        user_id=record.get("user_id"),
        record=record,
    )


class RealtimeMembershipFeed:
    """
    Cancellable async iterator of membership changes.

    The websocket is opened lazily on first iteration; ``close()`` ends it.
    A dropped connection is reopened after the reconnect policy's delay.
    """

    def __init__(
        self,
        *,
        url: str,
        anon_key: str,
        access_token: str,
        user_id: str,
        heartbeat_interval: Optional[float] = None,
        connect=websockets.connect,
        reconnect_policy: Optional[RetryPolicy] = None,
    ):
        self.socket_url = realtime_socket_url(url, anon_key)
        self.access_token = access_token
        self.user_id = user_id
        self.heartbeat_interval = heartbeat_interval or settings.REALTIME_HEARTBEAT_SECONDS
        self._connect = connect
        self.reconnect_policy = reconnect_policy or realtime_reconnect_policy()
        self._ws = None
        self._closed = False
        self._ref = 1
        self._failures = 0

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def __aiter__(self) -> AsyncIterator[MembershipChange]:
        return self._events()

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await ws.send(json.dumps({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}))

    async def _events(self) -> AsyncIterator[MembershipChange]:
        while not self._closed:
            try:
                async for change in self._stream():
                    yield change
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("[realtime] connection lost", extra={"user_id": self.user_id, "error": str(e)})
            if self._closed:
                return
            self._failures += 1
            delay = self.reconnect_policy.delay_for(self._failures)
            logger.info(
                "[realtime] reconnecting",
                extra={"user_id": self.user_id, "attempt": self._failures, "delay_seconds": delay},
            )
            await self.reconnect_policy.wait(delay)

    async def _stream(self) -> AsyncIterator[MembershipChange]:
        async with self._connect(self.socket_url) as ws:
            self._ws = ws
            await ws.send(json.dumps(join_message(self.user_id, self.access_token)))
            logger.info("[realtime] joined membership channel", extra={"user_id": self.user_id})
            self._failures = 0
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except (TypeError, ValueError):
                        logger.debug("[realtime] dropping non-JSON frame")
                        continue
                    if message.get("event") == "phx_error":
                        logger.warning("[realtime] channel error", extra={"user_id": self.user_id, "payload": message.get("payload")})
                        continue
                    change = parse_postgres_change(message)
                    if change is not None:
                        yield change
            finally:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat
                self._ws = None

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
