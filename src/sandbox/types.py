"""Type definitions for sandbox provisioning and agent launches."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SandboxStatus(str, Enum):
    """Lifecycle of a project's sandbox as recorded on the project."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"
    EXPIRED = "expired"


class AgentBackend(str, Enum):
    """Coding-agent CLIs the runner can drive."""

    CLAUDE = "claude"
    GEMINI = "gemini"


class LaunchStatus(str, Enum):
    """Status returned to the caller once a launch has been handed off."""

    STARTING = "starting"
    PROCESSING = "processing"


class SandboxHandle(BaseModel):
    """A provisioned sandbox."""

    sandbox_id: str
    created_at: datetime
    ready_deadline: datetime
    preview_host: str | None = None


class CommandResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class LaunchResult(BaseModel):
    """Outcome of handing a program to a sandbox. Never waits for completion."""

    status: LaunchStatus
    sandbox_id: str
    pid: int
    log_path: str


class AgentJob(BaseModel):
    """Everything the in-sandbox runner needs for one agent turn."""

    project_id: str
    user_id: str
    prompt: str
    working_directory: str
    backend: AgentBackend = AgentBackend.CLAUDE
    sandbox_id: str | None = None
    session_id: str | None = None
    model: str | None = None


class SetupJob(BaseModel):
    """Instructions for preparing a fresh sandbox before the first agent turn."""

    project_id: str
    user_id: str
    working_directory: str
    template_url: str | None = None
    install_commands: list[str] = Field(default_factory=lambda: ["npm install"])
    preview_command: str | None = "npx expo start --port 8081"
    preview_port: int = 8081
    preview_host: str | None = None
    restored_from_snapshot: bool = False
    agent_job_path: str | None = None
