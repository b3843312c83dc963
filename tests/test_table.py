"""Tests for the in-memory and PostgREST table implementations."""

import json
from datetime import UTC, datetime

import httpx
import pytest

from src.store.table import (
    Filter,
    InMemoryTable,
    Order,
    PostgrestTable,
    StoreError,
    eq,
    gt,
    is_null,
    lt,
    not_null,
)


@pytest.fixture
def table() -> InMemoryTable:
    counter = iter(range(1, 1000))
    return InMemoryTable("items", defaults=lambda: {"id": f"row-{next(counter)}"})


class TestInMemoryTable:
    @pytest.mark.asyncio
    async def test_insert_applies_defaults(self, table: InMemoryTable):
        row = await table.insert({"name": "a"})

        assert row == {"id": "row-1", "name": "a"}

    @pytest.mark.asyncio
    async def test_explicit_value_overrides_default(self, table: InMemoryTable):
        row = await table.insert({"id": "custom", "name": "a"})
        assert row["id"] == "custom"

    @pytest.mark.asyncio
    async def test_none_does_not_override_default(self, table: InMemoryTable):
        row = await table.insert({"id": None, "name": "a"})
        assert row["id"] == "row-1"

    @pytest.mark.asyncio
    async def test_filters(self, table: InMemoryTable):
        await table.insert({"name": "a", "n": 1, "pid": None})
        await table.insert({"name": "b", "n": 2, "pid": 10})
        await table.insert({"name": "c", "n": 3, "pid": 11})

        assert [r["name"] for r in await table.select([eq("name", "b")])] == ["b"]
        assert [r["name"] for r in await table.select([gt("n", 1)])] == ["b", "c"]
        assert [r["name"] for r in await table.select([lt("n", 3)])] == ["a", "b"]
        assert [r["name"] for r in await table.select([is_null("pid")])] == ["a"]
        assert [r["name"] for r in await table.select([not_null("pid")])] == ["b", "c"]
        assert [r["name"] for r in await table.select([Filter("n", "neq", 2)])] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_comparison_skips_null_values(self, table: InMemoryTable):
        await table.insert({"name": "a", "n": None})
        assert await table.select([gt("n", 0)]) == []

    @pytest.mark.asyncio
    async def test_unknown_operator_raises(self, table: InMemoryTable):
        await table.insert({"name": "a"})
        with pytest.raises(ValueError):
            await table.select([Filter("name", "like", "a%")])

    @pytest.mark.asyncio
    async def test_order_and_limit(self, table: InMemoryTable):
        await table.insert({"name": "b", "n": 1})
        await table.insert({"name": "a", "n": 1})
        await table.insert({"name": "c", "n": 2})

        rows = await table.select(order=[Order("n", descending=True), Order("name")], limit=2)

        assert [r["name"] for r in rows] == ["c", "a"]

    @pytest.mark.asyncio
    async def test_update_returns_updated_rows(self, table: InMemoryTable):
        await table.insert({"name": "a", "status": "active"})
        await table.insert({"name": "b", "status": "done"})

        updated = await table.update([eq("status", "active")], {"status": "expired"})

        assert [r["name"] for r in updated] == ["a"]
        assert [r["status"] for r in await table.select(order=[Order("name")])] == [
            "expired",
            "done",
        ]

    @pytest.mark.asyncio
    async def test_select_returns_copies(self, table: InMemoryTable):
        await table.insert({"name": "a", "data": {"k": 1}})

        rows = await table.select()
        rows[0]["data"]["k"] = 2

        assert (await table.select())[0]["data"] == {"k": 1}

    @pytest.mark.asyncio
    async def test_delete(self, table: InMemoryTable):
        await table.insert({"name": "a"})
        await table.insert({"name": "b"})

        assert await table.delete([eq("name", "a")]) == 1
        assert [r["name"] for r in await table.select()] == ["b"]


class TestPostgrestTable:
    def make_table(self, handler) -> PostgrestTable:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PostgrestTable("agent_events", "https://db.example.com/", "service-key", client)

    @pytest.mark.asyncio
    async def test_select_builds_postgrest_query(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": "evt-1"}])

        table = self.make_table(handler)
        cursor = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

        rows = await table.select(
            [eq("project_id", "proj-1"), gt("created_at", cursor), is_null("session_id")],
            order=[Order("created_at"), Order("id")],
            limit=5,
        )

        assert rows == [{"id": "evt-1"}]
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/agent_events"
        params = request.url.params
        assert params["select"] == "*"
        assert params["project_id"] == "eq.proj-1"
        assert params["created_at"] == "gt.2025-01-01T12:00:00+00:00"
        assert params["session_id"] == "is.null"
        assert params["order"] == "created_at.asc,id.asc"
        assert params["limit"] == "5"
        assert request.headers["apikey"] == "service-key"
        assert request.headers["authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_insert_posts_json_and_returns_stored_row(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert request.method == "POST"
            assert request.headers["prefer"] == "return=representation"
            return httpx.Response(201, json=[{**body, "id": "evt-1"}])

        table = self.make_table(handler)

        row = await table.insert({"project_id": "proj-1", "event_type": "user"})

        assert row == {"project_id": "proj-1", "event_type": "user", "id": "evt-1"}

    @pytest.mark.asyncio
    async def test_update_sends_filters_and_patch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PATCH"
            assert request.url.params["id"] == "eq.proj-1"
            assert request.url.params["agent_pid"] == "eq.42"
            assert json.loads(request.content) == {"agent_pid": None}
            return httpx.Response(200, json=[{"id": "proj-1", "agent_pid": None}])

        table = self.make_table(handler)

        rows = await table.update([eq("id", "proj-1"), eq("agent_pid", 42)], {"agent_pid": None})

        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_http_error_status_raises_store_error(self):
        table = self.make_table(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(StoreError, match="HTTP 500"):
            await table.select()

    @pytest.mark.asyncio
    async def test_transport_error_raises_store_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        table = self.make_table(handler)

        with pytest.raises(StoreError):
            await table.insert({"id": "x"})

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_result(self):
        table = self.make_table(lambda request: httpx.Response(204))

        assert await table.delete([eq("id", "x")]) == 0
