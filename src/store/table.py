"""
Row storage used by the event store, the session registry and the project
repository.

Two implementations share one interface:

- InMemoryTable: a list of dicts, used by tests and local runs. Server-side
  defaults (ids, timestamps) are produced by a `defaults` callable at insert.
- PostgrestTable: a PostgREST endpoint (Supabase or plain PostgREST) spoken
  to over httpx. Server-side defaults come from the database.
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any, NamedTuple

import httpx

from ..log_config import get_logger


class StoreError(Exception):
    """Raised when a table request fails."""

    pass


class Filter(NamedTuple):
    """Column predicate. `op` is one of eq, neq, gt, gte, lt, lte, is, not_is."""

    column: str
    op: str
    value: Any = None


class Order(NamedTuple):
    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def is_null(column: str) -> Filter:
    return Filter(column, "is", None)


def not_null(column: str) -> Filter:
    return Filter(column, "not_is", None)


class Table(ABC):
    """A named collection of rows."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored (with server defaults)."""

    @abstractmethod
    async def select(
        self,
        filters: list[Filter] | None = None,
        order: list[Order] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching every filter."""

    @abstractmethod
    async def update(self, filters: list[Filter], patch: dict[str, Any]) -> list[dict[str, Any]]:
        """Apply `patch` to matching rows and return the updated rows."""

    @abstractmethod
    async def delete(self, filters: list[Filter]) -> int:
        """Delete matching rows and return how many were removed."""


def _matches(row: dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.column)
    if flt.op == "is":
        return value is None
    if flt.op == "not_is":
        return value is not None
    if flt.op == "eq":
        return value == flt.value
    if flt.op == "neq":
        return value != flt.value
    if value is None:
        return False
    if flt.op == "gt":
        return value > flt.value
    if flt.op == "gte":
        return value >= flt.value
    if flt.op == "lt":
        return value < flt.value
    if flt.op == "lte":
        return value <= flt.value
    raise ValueError(f"Unknown filter operator: {flt.op}")


class InMemoryTable(Table):
    """Table kept in process memory."""

    def __init__(
        self,
        name: str,
        defaults: Callable[[], dict[str, Any]] | None = None,
    ):
        super().__init__(name)
        self.rows: list[dict[str, Any]] = []
        self._defaults = defaults

    async def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        stored = dict(self._defaults()) if self._defaults else {}
        stored.update({k: v for k, v in row.items() if v is not None or k not in stored})
        self.rows.append(stored)
        return copy.deepcopy(stored)

    async def select(
        self,
        filters: list[Filter] | None = None,
        order: list[Order] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [r for r in self.rows if all(_matches(r, f) for f in filters or [])]
        # Stable sorts applied from the least significant key
        for key in reversed(order or []):
            rows.sort(
                key=lambda r, c=key.column: (r.get(c) is None, r.get(c)),
                reverse=key.descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def update(self, filters: list[Filter], patch: dict[str, Any]) -> list[dict[str, Any]]:
        updated = []
        for row in self.rows:
            if all(_matches(row, f) for f in filters):
                row.update(patch)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, filters: list[Filter]) -> int:
        keep = [r for r in self.rows if not all(_matches(r, f) for f in filters)]
        removed = len(self.rows) - len(keep)
        self.rows = keep
        return removed


def _encode(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _jsonable(row: dict[str, Any]) -> dict[str, Any]:
    return {
        k: (_encode(v) if isinstance(v, datetime) else getattr(v, "value", v))
        for k, v in row.items()
    }


class PostgrestTable(Table):
    """
    Table backed by a PostgREST endpoint.

    Requests go to `{base_url}/rest/v1/{name}` with the service key in both
    the `apikey` and `Authorization` headers, which is what Supabase expects.
    """

    REQUEST_TIMEOUT = 10.0

    def __init__(self, name: str, base_url: str, api_key: str, client: httpx.AsyncClient):
        super().__init__(name)
        self.url = f"{base_url.rstrip('/')}/rest/v1/{name}"
        self.api_key = api_key
        self.client = client
        self.log = get_logger("postgrest", table=name)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    @staticmethod
    def _params(
        filters: list[Filter] | None,
        order: list[Order] | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        for flt in filters or []:
            if flt.op == "is":
                params.append((flt.column, "is.null"))
            elif flt.op == "not_is":
                params.append((flt.column, "not.is.null"))
            else:
                params.append((flt.column, f"{flt.op}.{_encode(flt.value)}"))
        if order:
            params.append(
                (
                    "order",
                    ",".join(f"{o.column}.{'desc' if o.descending else 'asc'}" for o in order),
                )
            )
        if limit is not None:
            params.append(("limit", str(limit)))
        return params

    async def _request(
        self,
        method: str,
        params: list[tuple[str, str]],
        body: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        try:
            resp = await self.client.request(
                method,
                self.url,
                params=params,
                json=body,
                headers=self.headers,
                timeout=self.REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {self.name} failed: {e}") from e

        if resp.status_code >= 400:
            raise StoreError(f"{method} {self.name} returned HTTP {resp.status_code}: {resp.text}")
        if not resp.content:
            return []
        return resp.json()

    async def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request("POST", [], _jsonable(row))
        if not rows:
            raise StoreError(f"POST {self.name} returned no row")
        return rows[0]

    async def select(
        self,
        filters: list[Filter] | None = None,
        order: list[Order] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = [("select", "*"), *self._params(filters, order, limit)]
        return await self._request("GET", params)

    async def update(self, filters: list[Filter], patch: dict[str, Any]) -> list[dict[str, Any]]:
        return await self._request("PATCH", self._params(filters), _jsonable(patch))

    async def delete(self, filters: list[Filter]) -> int:
        return len(await self._request("DELETE", self._params(filters)))
