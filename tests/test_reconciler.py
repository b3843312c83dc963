"""Tests for client-side reconciliation of catch-up reads and the push feed."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.client.messages import MessageRole, render_event
from src.client.reconciler import BoundedIdSet, ConnectionState, EventReconciler
from src.events.feed import InMemoryFeed
from src.events.models import (
    AssistantTextPayload,
    Event,
    EventType,
    ResultPayload,
    UserPayload,
)
from src.events.store import EventStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def make_event(
    event_id: str,
    offset_ms: int,
    event_type: EventType = EventType.ASSISTANT,
    event_data: dict | None = None,
    project_id: str = "proj-1",
) -> Event:
    return Event(
        id=event_id,
        project_id=project_id,
        event_type=event_type,
        event_data=event_data if event_data is not None else {"text": event_id},
        created_at=T0 + timedelta(milliseconds=offset_ms),
    )


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def feed() -> InMemoryFeed:
    return InMemoryFeed()


@pytest.fixture
def feed_store(feed: InMemoryFeed) -> EventStore:
    return EventStore.in_memory(feed)


@pytest.fixture
def reconciler(feed_store: EventStore) -> EventReconciler:
    return EventReconciler(feed_store, "proj-1")


class TestBoundedIdSet:
    def test_add_reports_duplicates(self):
        ids = BoundedIdSet(capacity=3)

        assert ids.add("a")
        assert not ids.add("a")
        assert "a" in ids

    def test_oldest_entries_are_evicted_first(self):
        ids = BoundedIdSet(capacity=2)
        for item in ("a", "b", "c"):
            ids.add(item)

        assert len(ids) == 2
        assert "a" not in ids
        assert "b" in ids and "c" in ids

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedIdSet(capacity=0)


class TestApply:
    def test_events_are_ordered_by_creation_time_not_arrival(
        self, reconciler: EventReconciler
    ):
        reconciler.apply(make_event("evt-2", 20))
        reconciler.apply(make_event("evt-1", 10))
        reconciler.apply(make_event("evt-3", 30))

        assert [m.id for m in reconciler.messages] == ["evt-1", "evt-2", "evt-3"]
        assert reconciler.cursor == T0 + timedelta(milliseconds=30)

    def test_duplicate_delivery_renders_once(self, reconciler: EventReconciler):
        event = make_event("evt-1", 10)

        assert reconciler.apply(event)
        assert not reconciler.apply(event)

        assert len(reconciler.messages) == 1

    def test_equal_timestamps_tie_break_on_id(self, reconciler: EventReconciler):
        reconciler.apply(make_event("evt-b", 10))
        reconciler.apply(make_event("evt-a", 10))

        assert [m.id for m in reconciler.messages] == ["evt-a", "evt-b"]

    def test_other_projects_are_ignored(self, reconciler: EventReconciler):
        assert not reconciler.apply(make_event("evt-1", 10, project_id="proj-2"))
        assert reconciler.messages == []

    def test_invalid_payload_is_skipped_but_remembered(self, reconciler: EventReconciler):
        bad = make_event("evt-bad", 10, event_data={})

        assert reconciler.apply(bad)
        assert reconciler.messages == []
        assert "evt-bad" in reconciler.seen
        assert reconciler.cursor == bad.created_at

    def test_reset_forgets_view_and_switches_project(self, reconciler: EventReconciler):
        reconciler.apply(make_event("evt-1", 10))
        reconciler.add_local_message("hi")

        reconciler.reset("proj-2")

        assert reconciler.project_id == "proj-2"
        assert reconciler.messages == []
        assert reconciler.cursor is None
        assert len(reconciler.seen) == 0


class TestOptimisticMessages:
    def test_local_message_is_replaced_by_its_confirmed_event(
        self, reconciler: EventReconciler
    ):
        local = reconciler.add_local_message("Add a button", client_message_id="cm-1")
        assert local.pending
        assert reconciler.pending_ids == {"cm-1"}

        reconciler.apply(
            make_event(
                "evt-1",
                10,
                event_type=EventType.USER,
                event_data={"content": "Add a button", "clientMessageId": "cm-1"},
            )
        )

        assert reconciler.pending_ids == set()
        assert [(m.id, m.pending) for m in reconciler.messages] == [("evt-1", False)]

    def test_local_messages_stay_after_confirmed_ones(self, reconciler: EventReconciler):
        reconciler.add_local_message("second", client_message_id="cm-2")
        reconciler.apply(make_event("evt-1", 10))

        assert [m.id for m in reconciler.messages] == ["evt-1", "cm-2"]

    def test_failed_send_is_marked(self, reconciler: EventReconciler):
        reconciler.add_local_message("Add a button", client_message_id="cm-1")

        assert reconciler.fail_local_message("cm-1")
        assert not reconciler.fail_local_message("cm-unknown")

        message = reconciler.messages[0]
        assert message.failed and not message.pending
        assert reconciler.pending_ids == set()


class TestCatchUp:
    @pytest.mark.asyncio
    async def test_catch_up_only_fetches_after_cursor(
        self, reconciler: EventReconciler, feed_store: EventStore
    ):
        await feed_store.append("proj-1", AssistantTextPayload(text="one"))
        await feed_store.append("proj-1", AssistantTextPayload(text="two"))

        assert await reconciler.catch_up() == 2

        await feed_store.append("proj-1", AssistantTextPayload(text="three"))
        assert await reconciler.catch_up() == 1
        assert [m.content for m in reconciler.messages] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_event_seen_on_both_paths_is_rendered_once(
        self, reconciler: EventReconciler, feed_store: EventStore
    ):
        event = await feed_store.append("proj-1", AssistantTextPayload(text="one"))

        reconciler.apply(event)
        reconciler.cursor = None
        await reconciler.catch_up()

        assert [m.content for m in reconciler.messages] == ["one"]


class TestRun:
    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(EventReconciler, "RECONNECT_BACKOFF_BASE", 0.0)

    @pytest.mark.asyncio
    async def test_live_events_and_gap_fill_after_disconnect(
        self, reconciler: EventReconciler, feed_store: EventStore, feed: InMemoryFeed
    ):
        states: list[ConnectionState] = []
        reconciler.on_state_change(states.append)
        await feed_store.append("proj-1", UserPayload(content="Add a button"))

        task = asyncio.create_task(reconciler.run())
        await wait_until(lambda: reconciler.state == ConnectionState.LIVE)
        assert [m.role for m in reconciler.messages] == [MessageRole.USER]

        await feed_store.append("proj-1", AssistantTextPayload(text="On it."))
        await wait_until(lambda: len(reconciler.messages) == 2)

        feed.disconnect("proj-1", reason="network lost")
        # Missed by the dropped subscription; must arrive through catch-up.
        await feed_store.append("proj-1", ResultPayload(subtype="success"))

        await wait_until(
            lambda: len(reconciler.messages) == 3 and reconciler.state == ConnectionState.LIVE
        )
        reconciler.stop()
        await task

        assert [m.role for m in reconciler.messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.RESULT,
        ]
        assert states[:3] == [
            ConnectionState.CATCHING_UP,
            ConnectionState.LIVE,
            ConnectionState.DISCONNECTED,
        ]
        assert states[-1] == ConnectionState.DISCONNECTED
        assert reconciler.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_stop_while_live_ends_run(self, reconciler: EventReconciler):
        task = asyncio.create_task(reconciler.run())
        await wait_until(lambda: reconciler.state == ConnectionState.LIVE)

        reconciler.stop()
        await asyncio.wait_for(task, 1)

        assert reconciler.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_overflowing_client_recovers_every_event(self, feed_store: EventStore):
        feed_store.feed = InMemoryFeed(max_buffered=2)
        reconciler = EventReconciler(feed_store, "proj-1")

        task = asyncio.create_task(reconciler.run())
        await wait_until(lambda: reconciler.state == ConnectionState.LIVE)

        for i in range(10):
            await feed_store.append("proj-1", AssistantTextPayload(text=f"chunk {i}"))

        await wait_until(lambda: len(reconciler.messages) == 10)
        reconciler.stop()
        await task

        assert [m.content for m in reconciler.messages] == [f"chunk {i}" for i in range(10)]


class TestRenderEvent:
    def test_tool_event(self):
        message = render_event(
            make_event(
                "evt-1",
                0,
                event_data={"toolName": "Edit", "toolContext": "App.tsx", "rawInput": {}},
            )
        )

        assert message.role == MessageRole.TOOL
        assert message.tool_use == "Edit"
        assert message.tool_context == "App.tsx"

    def test_result_error_flags(self):
        failed = render_event(
            make_event("evt-1", 0, EventType.RESULT, {"subtype": "error", "message": "boom"})
        )
        cancelled = render_event(
            make_event("evt-2", 0, EventType.RESULT, {"subtype": "cancelled"})
        )

        assert failed.is_error and failed.content == "boom"
        assert not cancelled.is_error
        assert cancelled.content == "cancelled"

    def test_system_error_and_preview(self):
        message = render_event(
            make_event(
                "evt-1",
                0,
                EventType.SYSTEM,
                {"message": "Preview ready", "subtype": "success", "previewUrl": "exp://x"},
            )
        )

        assert message.role == MessageRole.SYSTEM
        assert message.preview_url == "exp://x"
        assert not message.is_error

    def test_unknown_payload_is_rejected(self):
        event = MagicMock(spec=Event)
        event.payload = object()

        with pytest.raises(ValueError, match="Cannot render"):
            render_event(event)
