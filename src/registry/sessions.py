"""
Session registry.

Tracks one logical conversation per sandbox/backend pairing. A session is
created only after the backend reports its initialization record (that is
where the id comes from), resumed by follow-up turns, and expired by a
periodic sweep once it has been idle longer than the configured max age.

At most one session per project is expected to be active. That is a
convention kept by callers, not something this registry locks.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from .. import config
from ..log_config import get_logger
from ..sandbox.types import AgentBackend
from ..store.table import Filter, InMemoryTable, Order, PostgrestTable, Table, eq, lt
from .models import Session, SessionStatus


class SessionNotFoundError(Exception):
    """Raised when a session id is unknown or no longer active."""

    def __init__(self, session_id: str, status: SessionStatus | None = None):
        self.session_id = session_id
        self.status = status
        if status is None:
            detail = f"Session {session_id} not found"
        else:
            detail = f"Session {session_id} is {status.value} and cannot be resumed"
        super().__init__(detail)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionRegistry:
    """Session lifecycle over the `agent_sessions` table."""

    TABLE = "agent_sessions"
    DEFAULT_MAX_AGE = timedelta(hours=1)

    def __init__(self, table: Table, clock: Callable[[], datetime] = _utcnow):
        self.table = table
        self.clock = clock
        self.log = get_logger("session_registry")

    @classmethod
    def in_memory(cls, clock: Callable[[], datetime] = _utcnow) -> "SessionRegistry":
        return cls(InMemoryTable(cls.TABLE), clock)

    @classmethod
    def from_env(cls, client: httpx.AsyncClient) -> "SessionRegistry":
        return cls(
            PostgrestTable(
                cls.TABLE,
                os.environ[config.EVENT_STORE_URL],
                os.environ[config.EVENT_STORE_KEY],
                client,
            )
        )

    async def start(
        self,
        session_id: str,
        project_id: str,
        user_id: str,
        backend: AgentBackend,
        working_directory: str,
    ) -> str:
        """
        Register a session reported by the backend's initialization record.

        Registering an id that already exists refreshes it to active rather
        than inserting a duplicate row.
        """
        now = self.clock()
        existing = await self.get(session_id)
        if existing is not None:
            await self.table.update(
                [eq("session_id", session_id)],
                {"status": SessionStatus.ACTIVE, "last_activity_at": now, "error_message": None},
            )
            self.log.info("session.reactivate", session_id=session_id, project_id=project_id)
            return session_id

        others = await self.list_project_sessions(project_id, active_only=True)
        if others:
            # Last write wins; the previous session stays active until swept.
            self.log.warn(
                "session.overlap",
                session_id=session_id,
                project_id=project_id,
                active_session_ids=[s.session_id for s in others],
            )

        session = Session(
            session_id=session_id,
            project_id=project_id,
            user_id=user_id,
            backend=backend,
            working_directory=working_directory,
            status=SessionStatus.ACTIVE,
            created_at=now,
            last_activity_at=now,
        )
        await self.table.insert(session.model_dump())
        self.log.info(
            "session.start",
            session_id=session_id,
            project_id=project_id,
            backend=backend.value,
        )
        return session_id

    async def resume(self, session_id: str) -> Session:
        """
        Validate that a session can be continued and bump its activity time.

        Raises:
            SessionNotFoundError: the id is unknown, or the session is not active.
        """
        session = await self.get(session_id)
        if session is None:
            self.log.info("session.resume_rejected", session_id=session_id, reason="not_found")
            raise SessionNotFoundError(session_id)
        if not session.is_active:
            self.log.info(
                "session.resume_rejected",
                session_id=session_id,
                reason=session.status.value,
            )
            raise SessionNotFoundError(session_id, session.status)

        now = self.clock()
        await self.table.update([eq("session_id", session_id)], {"last_activity_at": now})
        self.log.info("session.resume", session_id=session_id, project_id=session.project_id)
        return session.model_copy(update={"last_activity_at": now})

    async def touch(self, session_id: str) -> None:
        await self.table.update(
            [eq("session_id", session_id), eq("status", SessionStatus.ACTIVE)],
            {"last_activity_at": self.clock()},
        )

    async def complete(self, session_id: str, result: str | None = None) -> bool:
        rows = await self.table.update(
            [eq("session_id", session_id)],
            {
                "status": SessionStatus.COMPLETED,
                "result": result,
                "last_activity_at": self.clock(),
            },
        )
        self.log.info("session.complete", session_id=session_id, found=bool(rows))
        return bool(rows)

    async def error(self, session_id: str, message: str) -> bool:
        rows = await self.table.update(
            [eq("session_id", session_id)],
            {
                "status": SessionStatus.ERROR,
                "error_message": message,
                "last_activity_at": self.clock(),
            },
        )
        self.log.info("session.error", session_id=session_id, found=bool(rows), detail=message)
        return bool(rows)

    async def sweep_expired(self, max_age: timedelta | None = None) -> int:
        """Mark active sessions idle for longer than `max_age` as expired."""
        max_age = max_age or self.DEFAULT_MAX_AGE
        cutoff = self.clock() - max_age
        rows = await self.table.update(
            [eq("status", SessionStatus.ACTIVE), lt("last_activity_at", cutoff)],
            {"status": SessionStatus.EXPIRED},
        )
        self.log.info(
            "session.sweep",
            expired_count=len(rows),
            max_age_s=int(max_age.total_seconds()),
        )
        return len(rows)

    async def get(self, session_id: str) -> Session | None:
        rows = await self.table.select([eq("session_id", session_id)], limit=1)
        return Session.model_validate(rows[0]) if rows else None

    async def exists(self, session_id: str) -> bool:
        """True only for sessions that can still be resumed."""
        session = await self.get(session_id)
        return session is not None and session.is_active

    async def list_project_sessions(
        self, project_id: str, active_only: bool = True
    ) -> list[Session]:
        filters: list[Filter] = [eq("project_id", project_id)]
        if active_only:
            filters.append(eq("status", SessionStatus.ACTIVE))
        rows = await self.table.select(filters, order=[Order("last_activity_at", descending=True)])
        return [Session.model_validate(r) for r in rows]

    async def delete(self, session_id: str) -> bool:
        """Hard delete. Only for explicit user action."""
        removed = await self.table.delete([eq("session_id", session_id)])
        self.log.info("session.delete", session_id=session_id, found=bool(removed))
        return bool(removed)

    async def active_count(self, user_id: str | None = None) -> int:
        filters: list[Filter] = [eq("status", SessionStatus.ACTIVE)]
        if user_id:
            filters.append(eq("user_id", user_id))
        return len(await self.table.select(filters))
