"""Realtime change feed over the store's Phoenix-channel websocket."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import ssl
import uuid
from typing import Any, Callable, Optional

import aiohttp
import certifi

from ..config import StoreConfig
from ..models import ChangeEvent, FeedStatus
from ..resilience import Sleep

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"


class RealtimeSubscription:
    """One channel joined to ``postgres_changes`` for a single table/filter.

    Reconnects with the configured delays after an unexpected drop. No status
    is reported once ``unsubscribe()`` has been called.
    """

    def __init__(
        self,
        config: StoreConfig,
        table: str,
        row_filter: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[FeedStatus], None],
        schema: str = "public",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.url = config.realtime_url
        self.api_key = config.anon_key
        self.join_timeout = config.join_timeout_seconds
        self.heartbeat_seconds = config.heartbeat_seconds
        self.reconnect_delays = config.reconnect_delays or (1.0,)
        self.table = table
        self.row_filter = row_filter
        self.schema = schema
        self.topic = f"realtime:{table}-changes-{uuid.uuid4().hex[:12]}"
        self._on_change = on_change
        self._on_status = on_status
        self._sleep = sleep
        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._joined = False
        self._closing = False
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._join_timer: Optional[asyncio.TimerHandle] = None

    @property
    def joined(self) -> bool:
        return self._joined

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    # ------------------------------------------------------------------
    # Protocol messages
    # ------------------------------------------------------------------

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def join_message(self) -> dict[str, Any]:
        self._join_ref = self._next_ref()
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {
                            "event": "*",
                            "schema": self.schema,
                            "table": self.table,
                            "filter": self.row_filter,
                        }
                    ],
                },
                "access_token": self.api_key,
            },
            "ref": self._join_ref,
            "join_ref": self._join_ref,
        }

    def _leave_message(self) -> dict[str, Any]:
        return {"topic": self.topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}

    def _heartbeat_message(self) -> dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    def _emit(self, status: FeedStatus) -> None:
        if self._closing:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception("Realtime status callback failed")

    def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch one decoded server message addressed to this channel."""
        if message.get("topic") != self.topic:
            return

        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            self._cancel_join_timer()
            if payload.get("status") == "ok":
                self._joined = True
                self._emit(FeedStatus.SUBSCRIBED)
            else:
                logger.warning("Realtime join rejected: %s", payload.get("response"))
                self._emit(FeedStatus.CHANNEL_ERROR)
        elif event == "postgres_changes":
            data = payload.get("data") or {}
            change = ChangeEvent(
                event_type=str(data.get("type", "")),
                table=str(data.get("table", self.table)),
                record=data.get("record") or {},
                old_record=data.get("old_record") or {},
            )
            try:
                self._on_change(change)
            except Exception:
                logger.exception("Realtime change callback failed")
        elif event == "phx_error":
            self._joined = False
            self._emit(FeedStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._joined = False
            self._emit(FeedStatus.CLOSED)
        elif event == "system" and payload.get("status") == "error":
            logger.warning("Realtime system error: %s", payload.get("message"))
            self._emit(FeedStatus.CHANNEL_ERROR)

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    def _on_join_timeout(self) -> None:
        self._join_timer = None
        if not self._joined:
            logger.warning("Realtime join timed out after %.1fs", self.join_timeout)
            self._emit(FeedStatus.TIMED_OUT)

    def _cancel_join_timer(self) -> None:
        if self._join_timer is not None:
            self._join_timer.cancel()
            self._join_timer = None

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.heartbeat_seconds)
            await ws.send_json(self._heartbeat_message())

    async def _connect_and_listen(self) -> None:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.ws_connect(
                self.url, params={"apikey": self.api_key, "vsn": PROTOCOL_VERSION}
            ) as ws:
                self._ws = ws
                await ws.send_json(self.join_message())
                loop = asyncio.get_running_loop()
                self._join_timer = loop.call_later(self.join_timeout, self._on_join_timeout)
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                try:
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                decoded = json.loads(msg.data)
                            except json.JSONDecodeError:
                                logger.debug("Ignoring non-JSON realtime frame")
                                continue
                            if isinstance(decoded, dict):
                                self.handle_message(decoded)
                        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
                finally:
                    heartbeat.cancel()
                    self._cancel_join_timer()
                    self._ws = None

    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            was_joined = False
            try:
                await self._connect_and_listen()
                was_joined = self._joined
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._closing:
                    break
                logger.warning("Realtime connection failed: %s", e)
                self._emit(FeedStatus.CHANNEL_ERROR)

            if self._closing:
                break

            if was_joined:
                attempt = 0
                self._emit(FeedStatus.CLOSED)
            self._joined = False

            delay = self.reconnect_delays[min(attempt, len(self.reconnect_delays) - 1)]
            attempt += 1
            logger.info("Realtime reconnecting in %.1fs", delay)
            await self._sleep(delay)

    async def unsubscribe(self) -> None:
        """Leave the channel and stop reconnecting."""
        self._closing = True
        self._cancel_join_timer()
        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await ws.send_json(self._leave_message())
                await ws.close()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug("Error closing realtime socket: %s", e)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class RealtimeFeed:
    """Factory for change-feed subscriptions on one store project."""

    def __init__(self, config: StoreConfig, sleep: Sleep = asyncio.sleep) -> None:
        self._config = config
        self._sleep = sleep

    async def subscribe(
        self,
        table: str,
        row_filter: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[FeedStatus], None],
    ) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            self._config, table, row_filter, on_change, on_status, sleep=self._sleep
        )
        subscription.start()
        return subscription
