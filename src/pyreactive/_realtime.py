"""Realtime change feed over the Phoenix channel protocol (aiohttp websockets)."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from pydantic import ValidationError

from pyreactive._redact import redact_for_log
from pyreactive.config import StoreConfig
from pyreactive.exceptions import RealtimeError
from pyreactive.remote import ChangeSubscription
from pyreactive.state.events import RemoteChangeEvent

PHOENIX_TOPIC = "phoenix"
PHOENIX_VSN = "1.0.0"


@dataclass
class RealtimeChannel:
    """A joined channel carrying one ``postgres_changes`` binding."""

    topic: str
    subscription: ChangeSubscription
    on_event: Callable[[RemoteChangeEvent], None]
    runtime: RealtimeRuntime
    joined: bool = False
    binding_ids: list[int] = field(default_factory=list)

    async def unsubscribe(self) -> None:
        await self.runtime.leave(self)


def build_join_payload(subscription: ChangeSubscription, access_token: str) -> dict[str, Any]:
    binding: dict[str, Any] = {
        "event": subscription.event.value,
        "schema": subscription.schema,
        "table": subscription.table,
    }
    if subscription.filter:
        binding["filter"] = subscription.filter
    return {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [binding],
            "private": False,
        },
        "access_token": access_token,
    }


def parse_postgres_change(payload: dict[str, Any]) -> RemoteChangeEvent | None:
    """Convert a ``postgres_changes`` message payload into a change event."""
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    try:
        return RemoteChangeEvent.model_validate(
            {
                "type": data.get("type") or data.get("eventType"),
                "table": data.get("table"),
                "schema": data.get("schema") or "public",
                "commit_timestamp": data.get("commit_timestamp"),
                "record": data.get("record"),
                "old_record": data.get("old_record"),
            }
        )
    except ValidationError:
        return None


class RealtimeRuntime:
    """Single websocket multiplexing realtime channels onto an asyncio loop."""

    def __init__(
        self,
        *,
        config: StoreConfig,
        http_session: aiohttp.ClientSession,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._logger = logger or logging.getLogger(__name__)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._refs = itertools.count(1)
        self._channel_ids = itertools.count(1)
        self._channels: dict[str, RealtimeChannel] = {}
        self._replies: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the websocket is open."""
        return self._ws is not None and not self._ws.closed

    async def start(self) -> None:
        """Open the websocket and start the reader and heartbeat tasks."""
        async with self._start_lock:
            if self.is_running:
                return
            url = self._config.realtime_url
            self._logger.debug("Realtime connect requested url=%s", url)
            try:
                self._ws = await self._http.ws_connect(
                    url,
                    params={"apikey": self._config.key, "vsn": PHOENIX_VSN},
                    heartbeat=None,
                )
            except aiohttp.ClientError as exc:
                raise RealtimeError(f"Realtime connect failed: {exc}", endpoint=url) from exc
            self._reader = asyncio.create_task(self._read_loop())
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
            self._logger.debug("Realtime socket open")

    async def stop(self) -> None:
        """Close the websocket and fail any pending joins."""
        tasks = [task for task in (self._reader, self._heartbeat) if task is not None]
        self._reader = None
        self._heartbeat = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()
        self._fail_pending(RealtimeError("Realtime socket closed"))
        self._channels.clear()
        self._logger.debug("Realtime socket closed")

    async def join(
        self,
        subscription: ChangeSubscription,
        on_event: Callable[[RemoteChangeEvent], None],
    ) -> RealtimeChannel:
        """Join a channel for *subscription* and wait for the server's reply."""
        await self.start()
        topic = f"realtime:{subscription.schema}:{subscription.table}:{next(self._channel_ids)}"
        channel = RealtimeChannel(topic=topic, subscription=subscription, on_event=on_event, runtime=self)
        self._channels[topic] = channel

        payload = build_join_payload(subscription, self._config.bearer_token)
        try:
            reply = await self._request(topic, "phx_join", payload, timeout=self._config.realtime_join_timeout)
        except BaseException:
            self._channels.pop(topic, None)
            raise

        if reply.get("status") != "ok":
            self._channels.pop(topic, None)
            raise RealtimeError(
                f"Realtime join rejected for {topic}: {redact_for_log(reply.get('response'))}",
                endpoint=topic,
            )

        response = reply.get("response")
        bindings = response.get("postgres_changes") if isinstance(response, dict) else None
        if isinstance(bindings, list):
            channel.binding_ids = [b["id"] for b in bindings if isinstance(b, dict) and isinstance(b.get("id"), int)]
        channel.joined = True
        self._logger.debug("Realtime joined topic=%s filter=%s", topic, subscription.filter)
        return channel

    async def leave(self, channel: RealtimeChannel) -> None:
        """Leave *channel*; events for it are dropped from now on."""
        if self._channels.pop(channel.topic, None) is None:
            return
        channel.joined = False
        if not self.is_running:
            return
        try:
            await self._request(channel.topic, "phx_leave", {}, timeout=self._config.realtime_join_timeout)
        except RealtimeError:
            self._logger.debug("Realtime leave failed topic=%s", channel.topic, exc_info=True)
        self._logger.debug("Realtime left topic=%s", channel.topic)

    async def _send(self, topic: str, event: str, payload: dict[str, Any], ref: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise RealtimeError("Realtime socket is not open", endpoint=topic)
        message = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        self._logger.debug("Realtime send %s", redact_for_log(message))
        await ws.send_str(json.dumps(message, separators=(",", ":")))

    async def _request(self, topic: str, event: str, payload: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        ref = str(next(self._refs))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._replies[ref] = future
        try:
            await self._send(topic, event, payload, ref)
            return await asyncio.wait_for(future, timeout)
        except TimeoutError as exc:
            raise RealtimeError(f"Realtime {event} timed out for {topic}", endpoint=topic) from exc
        finally:
            self._replies.pop(ref, None)

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        self._logger.debug("Realtime non-JSON frame dropped")
                        continue
                    if isinstance(message, dict):
                        self.handle_message(message)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            self._logger.debug("Realtime reader stopped")
            self._fail_pending(RealtimeError("Realtime socket closed"))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.realtime_heartbeat)
            try:
                await self._send(PHOENIX_TOPIC, "heartbeat", {}, str(next(self._refs)))
            except (RealtimeError, ConnectionResetError):
                self._logger.debug("Realtime heartbeat failed", exc_info=True)
                return

    def _fail_pending(self, exc: RealtimeError) -> None:
        replies = list(self._replies.values())
        self._replies.clear()
        for future in replies:
            if not future.done():
                future.set_exception(exc)

    def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch one decoded Phoenix message (replies and change events)."""
        event = message.get("event")
        topic = message.get("topic")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if event == "phx_reply":
            ref = message.get("ref")
            future = self._replies.get(str(ref)) if ref is not None else None
            if future is not None and not future.done():
                future.set_result(payload)
            return

        channel = self._channels.get(topic) if isinstance(topic, str) else None
        if channel is None:
            return

        if event == "postgres_changes":
            change = parse_postgres_change(payload)
            if change is None:
                self._logger.debug("Realtime change payload dropped %s", redact_for_log(payload))
                return
            try:
                channel.on_event(change)
            except Exception:
                self._logger.debug("Realtime on_event callback failed", exc_info=True)
            return

        if event in ("phx_error", "phx_close"):
            self._logger.debug("Realtime channel %s topic=%s", event, topic)
            channel.joined = False
            self._channels.pop(topic, None)
