"""Data models for projects and agent sessions."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from ..sandbox.types import AgentBackend, SandboxStatus


class SessionStatus(str, Enum):
    """Status of a resumable conversation."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    EXPIRED = "expired"


class Session(BaseModel):
    """One resumable conversation with an agent backend."""

    session_id: str
    project_id: str
    user_id: str
    backend: AgentBackend
    working_directory: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime
    last_activity_at: datetime
    error_message: str | None = None
    result: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class Project(BaseModel):
    """Aggregate root for a user's app. Archived externally, never deleted here."""

    id: str
    user_id: str | None = None
    sandbox_id: str | None = None
    sandbox_status: SandboxStatus = SandboxStatus.PENDING
    agent_backend: AgentBackend = AgentBackend.CLAUDE
    preview_url: str | None = None
    session_id: str | None = None
    agent_pid: int | None = None
    snapshot_image_id: str | None = None
    updated_at: datetime | None = None
