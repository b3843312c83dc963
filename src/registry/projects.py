"""Project records: sandbox, preview URL, last session and tracked agent PID."""

import os
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from .. import config
from ..log_config import get_logger
from ..store.table import InMemoryTable, PostgrestTable, Table, eq, not_null
from .models import Project


class ProjectNotFoundError(Exception):
    """Raised when a project id does not exist."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class ProjectRepository:
    """
    Reads and updates rows of the `projects` table.

    Concurrent writers are not coordinated: each update is last-write-wins
    per field.
    """

    TABLE = "projects"

    def __init__(self, table: Table, clock: Callable[[], datetime] = lambda: datetime.now(UTC)):
        self.table = table
        self.clock = clock
        self.log = get_logger("projects")

    @classmethod
    def in_memory(cls) -> "ProjectRepository":
        return cls(InMemoryTable(cls.TABLE))

    @classmethod
    def from_env(cls, client: httpx.AsyncClient) -> "ProjectRepository":
        return cls(
            PostgrestTable(
                cls.TABLE,
                os.environ[config.EVENT_STORE_URL],
                os.environ[config.EVENT_STORE_KEY],
                client,
            )
        )

    async def get(self, project_id: str) -> Project | None:
        rows = await self.table.select([eq("id", project_id)], limit=1)
        return Project.model_validate(rows[0]) if rows else None

    async def require(self, project_id: str) -> Project:
        project = await self.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def create(self, project: Project) -> Project:
        row = await self.table.insert(project.model_dump())
        return Project.model_validate(row)

    async def update(self, project_id: str, **fields: Any) -> Project | None:
        fields["updated_at"] = self.clock()
        rows = await self.table.update([eq("id", project_id)], fields)
        if not rows:
            self.log.warn("project.update_missing", project_id=project_id)
            return None
        self.log.debug(
            "project.update",
            project_id=project_id,
            fields=sorted(k for k in fields if k != "updated_at"),
        )
        return Project.model_validate(rows[0])

    async def clear_pid(self, project_id: str, expected_pid: int | None = None) -> bool:
        """
        Clear the tracked agent PID.

        With `expected_pid`, only clears when the project still tracks that
        PID, so a finished run does not erase a newer launch.
        """
        filters = [eq("id", project_id)]
        if expected_pid is not None:
            filters.append(eq("agent_pid", expected_pid))
        rows = await self.table.update(filters, {"agent_pid": None, "updated_at": self.clock()})
        return bool(rows)

    async def list_running_agents(self) -> list[Project]:
        rows = await self.table.select([not_null("agent_pid")])
        return [Project.model_validate(r) for r in rows]
