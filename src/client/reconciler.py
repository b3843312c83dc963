"""
Client reconciliation layer.

Builds one client's view of a project's event log from two unreliable
sources: catch-up reads from the store and a push feed that may drop,
duplicate or race with those reads. Each reconciler keeps its own cursor,
dedup cache and optimistic messages; nothing is shared between clients.

States: disconnected -> catching_up -> live. Entering catching_up fetches
everything after the cursor; once the feed is connected the fetch runs once
more to close the gap between the historical read and the subscription.
Any feed error drops back to disconnected and reconnects with backoff.
"""

import asyncio
import bisect
import uuid
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from ..events.models import Event
from ..events.store import EventStore
from ..log_config import get_logger
from .messages import ChatMessage, MessageRole, render_event


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CATCHING_UP = "catching_up"
    LIVE = "live"


class BoundedIdSet:
    """Fixed-capacity set that forgets its oldest entries first."""

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, item: str) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item: str) -> bool:
        """Insert `item`. Returns False when it was already present."""
        if item in self._ids:
            return False
        self._ids[item] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True

    def clear(self) -> None:
        self._ids.clear()


StateListener = Callable[[ConnectionState], None]


class EventReconciler:
    """One subscribing client's view of a project's events."""

    DEDUP_CAPACITY = 500
    RECONNECT_BACKOFF_BASE = 2.0
    RECONNECT_MAX_DELAY = 10.0

    def __init__(self, store: EventStore, project_id: str, dedup_capacity: int | None = None):
        self.store = store
        self.project_id = project_id
        self.seen = BoundedIdSet(dedup_capacity or self.DEDUP_CAPACITY)
        self.cursor: datetime | None = None
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.log = get_logger("reconciler", project_id=project_id)

        self._confirmed: list[ChatMessage] = []
        self._local: list[ChatMessage] = []
        self._listeners: list[StateListener] = []
        self._stopped = asyncio.Event()
        self._connection: asyncio.Task | None = None

    @property
    def messages(self) -> list[ChatMessage]:
        """Confirmed messages in event order, then optimistic ones in send order."""
        return self._confirmed + self._local

    @property
    def pending_ids(self) -> set[str]:
        return {m.id for m in self._local if m.pending}

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.log.debug("reconciler.state", from_state=self.state.value, to_state=state.value)
        self.state = state
        for listener in self._listeners:
            listener(state)

    # Applying events

    def apply(self, event: Event) -> bool:
        """Apply one event unless it was already seen. Returns whether it was applied."""
        if event.project_id != self.project_id:
            return False
        if event.id is None or not self.seen.add(event.id):
            return False

        if self.cursor is None or event.created_at > self.cursor:
            self.cursor = event.created_at

        try:
            message = render_event(event)
        except ValueError as e:
            self.log.warn(
                "reconciler.invalid_event",
                exc=e,
                event_id=event.id,
                event_type=event.event_type.value,
            )
            return True

        if message.role == MessageRole.USER and message.client_message_id:
            self._confirm_local(message.client_message_id)
        bisect.insort(self._confirmed, message, key=lambda m: m.sort_key)
        return True

    def _confirm_local(self, client_message_id: str) -> None:
        for i, local in enumerate(self._local):
            if local.id == client_message_id:
                del self._local[i]
                self.log.debug("reconciler.confirmed", client_message_id=client_message_id)
                return

    def add_local_message(self, content: str, client_message_id: str | None = None) -> ChatMessage:
        """Show a user message before the server has confirmed it."""
        client_message_id = client_message_id or uuid.uuid4().hex
        message = ChatMessage(
            id=client_message_id,
            role=MessageRole.USER,
            content=content,
            pending=True,
            client_message_id=client_message_id,
        )
        self._local.append(message)
        return message

    def fail_local_message(self, client_message_id: str) -> bool:
        """Mark an optimistic message as failed (the send request errored)."""
        for local in self._local:
            if local.id == client_message_id:
                local.pending = False
                local.failed = True
                return True
        return False

    def reset(self, project_id: str | None = None) -> None:
        """Forget everything, e.g. when the view switches to another project."""
        if project_id is not None:
            self.project_id = project_id
            self.log = get_logger("reconciler", project_id=project_id)
        self.seen.clear()
        self.cursor = None
        self._confirmed = []
        self._local = []

    # Catch-up and live subscription

    async def catch_up(self) -> int:
        events = await self.store.fetch_since(self.project_id, self.cursor)
        applied = sum(1 for event in events if self.apply(event))
        self.log.debug("reconciler.catch_up", fetched=len(events), applied=applied)
        return applied

    async def connect_once(self) -> None:
        """Catch up, subscribe, and apply live events until the feed ends or fails."""
        self._set_state(ConnectionState.CATCHING_UP)
        await self.catch_up()
        async with self.store.subscribe(self.project_id) as stream:
            await self.catch_up()
            self._set_state(ConnectionState.LIVE)
            self.reconnect_attempts = 0
            async for event in stream:
                self.apply(event)

    async def run(self) -> None:
        """Stay connected until stop() is called."""
        while not self._stopped.is_set():
            self._connection = asyncio.create_task(self.connect_once())
            try:
                await self._connection
                self.log.info("reconciler.disconnect", reason="feed_closed")
            except asyncio.CancelledError:
                if self._stopped.is_set():
                    break
                raise
            except Exception as e:
                self.log.warn("reconciler.disconnect", reason="feed_error", exc=e)
            finally:
                self._connection = None
                self._set_state(ConnectionState.DISCONNECTED)

            if self._stopped.is_set():
                break

            self.reconnect_attempts += 1
            delay = min(
                self.RECONNECT_BACKOFF_BASE**self.reconnect_attempts,
                self.RECONNECT_MAX_DELAY,
            )
            self.log.info(
                "reconciler.reconnect",
                attempt=self.reconnect_attempts,
                delay_s=round(delay, 1),
            )
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
        if self._connection is not None:
            self._connection.cancel()
