"""
Append-only, timestamp-ordered event log keyed by project.

Guarantees relied on by the rest of the system:
- every insert is assigned a server-side, monotonically increasing created_at;
- fetch_since returns every event with created_at strictly after a cursor,
  ordered by (created_at, id);
- subscribe delivers newly inserted events for a project to all current
  subscribers, with no ordering guarantee relative to a concurrent fetch.
"""

import os
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

import httpx

from .. import config
from ..log_config import get_logger
from ..store.table import InMemoryTable, Order, PostgrestTable, Table, eq, gt
from .feed import EventFeed, InMemoryFeed, RealtimeFeed
from .models import Event, EventPayload, build_row


class EventIdentifier:
    """
    Ascending event ids: `evt_{timestamp_hex}{random_base62}`.

    The 12 hex chars encode (timestamp_ms * 0x1000 + counter), so ids created
    in the same process sort in creation order.

    Note: class-level state; safe for async code but not thread-safe.
    """

    PREFIX: ClassVar[str] = "evt"
    BASE62_CHARS: ClassVar[str] = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
    RANDOM_LENGTH: ClassVar[int] = 14

    _last_timestamp: ClassVar[int] = 0
    _counter: ClassVar[int] = 0

    @classmethod
    def ascending(cls) -> str:
        current_timestamp = int(time.time() * 1000)
        if current_timestamp != cls._last_timestamp:
            cls._last_timestamp = current_timestamp
            cls._counter = 0
        cls._counter += 1

        encoded = (current_timestamp * 0x1000 + cls._counter) & 0xFFFFFFFFFFFF
        timestamp_hex = encoded.to_bytes(6, byteorder="big").hex()
        suffix = "".join(cls.BASE62_CHARS[secrets.randbelow(62)] for _ in range(cls.RANDOM_LENGTH))
        return f"{cls.PREFIX}_{timestamp_hex}{suffix}"


class MonotonicClock:
    """UTC clock that never returns the same or an earlier instant twice."""

    RESOLUTION = timedelta(microseconds=1)

    def __init__(self):
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = datetime.now(UTC)
        if self._last is not None and current <= self._last:
            current = self._last + self.RESOLUTION
        self._last = current
        return current


class EventStore:
    """Event log over a Table plus a push feed."""

    TABLE = "agent_events"

    def __init__(self, table: Table, feed: EventFeed):
        self.table = table
        self.feed = feed
        self.log = get_logger("event_store")

    @classmethod
    def in_memory(cls, feed: InMemoryFeed | None = None) -> "EventStore":
        clock = MonotonicClock()
        table = InMemoryTable(
            cls.TABLE,
            defaults=lambda: {"id": EventIdentifier.ascending(), "created_at": clock.now()},
        )
        return cls(table, feed or InMemoryFeed())

    @classmethod
    def from_env(cls, client: httpx.AsyncClient) -> "EventStore":
        """PostgREST table plus Realtime feed, configured from EVENT_STORE_URL/KEY."""
        base_url = os.environ[config.EVENT_STORE_URL]
        api_key = os.environ[config.EVENT_STORE_KEY]
        return cls(
            PostgrestTable(cls.TABLE, base_url, api_key, client),
            RealtimeFeed(base_url, api_key, table=cls.TABLE),
        )

    async def append(
        self,
        project_id: str,
        payload: EventPayload,
        session_id: str | None = None,
    ) -> Event:
        """Insert an event. The store assigns id and created_at."""
        row = await self.table.insert(build_row(project_id, payload, session_id))
        event = Event.model_validate(row)
        await self.feed.publish(event)
        self.log.debug(
            "event_store.append",
            project_id=project_id,
            session_id=session_id,
            event_type=event.event_type.value,
            event_id=event.id,
        )
        return event

    async def fetch_since(self, project_id: str, cursor: datetime | None = None) -> list[Event]:
        """All events for a project with created_at > cursor (or all of them), ascending."""
        filters = [eq("project_id", project_id)]
        if cursor is not None:
            filters.append(gt("created_at", cursor))
        rows = await self.table.select(filters, order=[Order("created_at"), Order("id")])
        return self._to_events(rows)

    async def latest(self, project_id: str) -> Event | None:
        rows = await self.table.select(
            [eq("project_id", project_id)],
            order=[Order("created_at", descending=True), Order("id", descending=True)],
            limit=1,
        )
        events = self._to_events(rows)
        return events[0] if events else None

    def subscribe(self, project_id: str) -> AbstractAsyncContextManager[AsyncIterator[Event]]:
        return self.feed.subscribe(project_id)

    @staticmethod
    def _to_events(rows: list[dict[str, Any]]) -> list[Event]:
        return sorted((Event.model_validate(r) for r in rows), key=lambda e: e.sort_key)
