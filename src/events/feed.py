"""
Push notification feeds for newly inserted events.

A feed delivers every event inserted for a project to all current
subscribers. Delivery may race with a concurrent historical read, and a
subscriber that falls behind is disconnected rather than buffered without
bound, so consumers must dedupe by id and catch up after a disconnect.
"""

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import websockets
from pydantic import ValidationError
from websockets.exceptions import InvalidHandshake

from ..log_config import get_logger
from .models import Event


class FeedDisconnectedError(Exception):
    """Raised to a subscriber when its subscription is dropped."""

    pass


class EventFeed(ABC):
    """Source of live insert notifications, filtered by project."""

    @abstractmethod
    def subscribe(self, project_id: str) -> AbstractAsyncContextManager[AsyncIterator[Event]]:
        """Open a subscription. Entering the context means the channel is connected."""

    async def publish(self, event: Event) -> None:
        """Announce an inserted event. Feeds driven by the database ignore this."""
        return None


_CLOSED = object()


class Subscription:
    """Bounded per-subscriber queue exposed as an async iterator."""

    def __init__(self, project_id: str, max_buffered: int):
        self.project_id = project_id
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_buffered + 1)
        self.max_buffered = max_buffered
        self.error: Exception | None = None

    def deliver(self, event: Event) -> None:
        if self.error is not None:
            return
        if self.queue.qsize() >= self.max_buffered:
            self.fail(FeedDisconnectedError("subscriber buffer overflow"))
            return
        self.queue.put_nowait(event)

    def fail(self, error: Exception) -> None:
        """Drop anything still buffered and end the iteration with `error`."""
        if self.error is not None:
            return
        self.error = error
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        item = await self.queue.get()
        if item is _CLOSED:
            raise self.error or StopAsyncIteration
        return item


class InMemoryFeed(EventFeed):
    """Fan-out feed for a single process."""

    MAX_BUFFERED_EVENTS = 1000

    def __init__(self, max_buffered: int | None = None):
        self.max_buffered = max_buffered or self.MAX_BUFFERED_EVENTS
        self._subscribers: dict[str, set[Subscription]] = {}
        self.log = get_logger("feed", feed="memory")

    @asynccontextmanager
    async def subscribe(self, project_id: str) -> AsyncIterator[Subscription]:
        sub = Subscription(project_id, self.max_buffered)
        self._subscribers.setdefault(project_id, set()).add(sub)
        self.log.debug("feed.subscribe", project_id=project_id)
        try:
            yield sub
        finally:
            subs = self._subscribers.get(project_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[project_id]

    async def publish(self, event: Event) -> None:
        for sub in list(self._subscribers.get(event.project_id, ())):
            sub.deliver(event)
            if sub.error is not None:
                self.log.warn(
                    "feed.subscriber_dropped",
                    project_id=event.project_id,
                    reason=str(sub.error),
                )

    def subscriber_count(self, project_id: str) -> int:
        return len(self._subscribers.get(project_id, ()))

    def disconnect(self, project_id: str, reason: str = "disconnected") -> None:
        """Drop every subscriber of a project, as a network failure would."""
        for sub in list(self._subscribers.get(project_id, ())):
            sub.fail(FeedDisconnectedError(reason))


def parse_change_message(message: dict[str, Any]) -> Event | None:
    """
    Translate one Realtime channel message into an Event.

    Returns None for messages that carry no row (join replies, heartbeats,
    presence). Raises FeedDisconnectedError when the server closes or errors
    the channel.
    """
    event_name = message.get("event")
    payload = message.get("payload") or {}

    if event_name in ("phx_error", "phx_close"):
        raise FeedDisconnectedError(f"channel {event_name}")
    if event_name == "phx_reply" and payload.get("status") == "error":
        raise FeedDisconnectedError(f"channel join rejected: {payload.get('response')}")
    if event_name == "system" and payload.get("status") == "error":
        raise FeedDisconnectedError(f"channel error: {payload.get('message')}")
    if event_name != "postgres_changes":
        return None

    record = (payload.get("data") or {}).get("record")
    if not record:
        return None
    try:
        return Event.model_validate(record)
    except ValidationError as e:
        raise FeedDisconnectedError(f"malformed change record: {e}") from e


class RealtimeFeed(EventFeed):
    """
    Supabase Realtime subscription over a websocket.

    Joins a Phoenix channel with a `postgres_changes` INSERT filter on the
    project id and keeps it alive with heartbeats. Inserts are published by
    the database, so `publish` is a no-op here.
    """

    HEARTBEAT_INTERVAL = 25.0
    JOIN_TIMEOUT = 10.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "agent_events",
        schema: str = "public",
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.table = table
        self.schema = schema
        self._refs = itertools.count(1)
        self.log = get_logger("feed", feed="realtime", table=table)

    @property
    def ws_url(self) -> str:
        url = self.base_url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://")
        return f"{url}/realtime/v1/websocket?apikey={self.api_key}&vsn=1.0.0"

    def topic(self, project_id: str) -> str:
        return f"realtime:{self.table}:{project_id}"

    def join_message(self, project_id: str, ref: str) -> dict[str, Any]:
        return {
            "topic": self.topic(project_id),
            "event": "phx_join",
            "payload": {
                "config": {
                    "postgres_changes": [
                        {
                            "event": "INSERT",
                            "schema": self.schema,
                            "table": self.table,
                            "filter": f"project_id=eq.{project_id}",
                        }
                    ]
                },
                "access_token": self.api_key,
            },
            "ref": ref,
        }

    def heartbeat_message(self) -> dict[str, Any]:
        return {
            "topic": "phoenix",
            "event": "heartbeat",
            "payload": {},
            "ref": str(next(self._refs)),
        }

    @asynccontextmanager
    async def subscribe(self, project_id: str) -> AsyncIterator[AsyncIterator[Event]]:
        try:
            ws = await websockets.connect(self.ws_url, ping_interval=None)
        except (OSError, InvalidHandshake) as e:
            raise FeedDisconnectedError(f"connect failed: {e}") from e

        heartbeat_task: asyncio.Task[None] | None = None
        try:
            join_ref = str(next(self._refs))
            await ws.send(json.dumps(self.join_message(project_id, join_ref)))
            await self._await_join(ws, join_ref)
            self.log.info("feed.connect", project_id=project_id, outcome="success")

            heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
            yield self._iterate(ws)
        finally:
            if heartbeat_task:
                heartbeat_task.cancel()
            await ws.close()

    async def _await_join(self, ws: Any, join_ref: str) -> None:
        try:
            async with asyncio.timeout(self.JOIN_TIMEOUT):
                async for raw in ws:
                    message = json.loads(raw)
                    if message.get("ref") != join_ref:
                        continue
                    parse_change_message(message)
                    return
        except TimeoutError as e:
            raise FeedDisconnectedError("channel join timed out") from e
        except websockets.ConnectionClosed as e:
            raise FeedDisconnectedError(f"connection closed during join: {e.code}") from e
        raise FeedDisconnectedError("connection closed during join")

    async def _iterate(self, ws: Any) -> AsyncIterator[Event]:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError as e:
                    self.log.debug("feed.invalid_message", exc=e)
                    continue
                event = parse_change_message(message)
                if event is not None:
                    yield event
        except websockets.ConnectionClosed as e:
            raise FeedDisconnectedError(f"connection closed: {e.code}") from e
        raise FeedDisconnectedError("connection closed")

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.HEARTBEAT_INTERVAL)
            try:
                await ws.send(json.dumps(self.heartbeat_message()))
            except websockets.ConnectionClosed:
                return
