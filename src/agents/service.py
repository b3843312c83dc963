"""
Front-door agent operations.

Stateless request/response handling: every call returns as soon as the
sandbox has been handed a program. Outcomes after hand-off are reported
only through the event store.
"""

from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .. import config
from ..events.models import Event, ResultPayload, ResultSource, ResultSubtype, UserPayload
from ..events.store import EventStore
from ..log_config import get_logger
from ..registry.models import Project, Session
from ..registry.projects import ProjectRepository
from ..registry.sessions import SessionNotFoundError, SessionRegistry
from ..sandbox.launcher import AgentLauncher
from ..sandbox.provisioner import ProvisioningError, SandboxProvisioner
from ..sandbox.types import AgentBackend, AgentJob, SandboxStatus, SetupJob

# Sandbox states that mean a new sandbox must be provisioned
UNUSABLE_SANDBOX_STATUSES = frozenset(
    {SandboxStatus.FAILED, SandboxStatus.STOPPED, SandboxStatus.EXPIRED}
)


class NoAgentRunningError(Exception):
    """Raised when stopping a project that has no tracked agent process."""

    def __init__(self, project_id: str, detail: str | None = None):
        self.project_id = project_id
        super().__init__(detail or f"No agent is running for project {project_id}")


class CreateAgentRequest(BaseModel):
    """Body of a create/continue request. Field names are camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId", min_length=1)
    prompt: str = Field(min_length=1)
    sandbox_id: str | None = Field(None, alias="sandboxId")
    session_id: str | None = Field(None, alias="sessionId")
    working_directory: str | None = Field(None, alias="workingDirectory")
    user_id: str | None = Field(None, alias="userId")
    backend: AgentBackend | None = None
    model: str | None = None
    client_message_id: str | None = Field(None, alias="clientMessageId")
    template_url: str | None = Field(None, alias="templateUrl")


class AgentService:
    """Create/continue, stop and inspect agent runs for projects."""

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        launcher: AgentLauncher,
        store: EventStore,
        registry: SessionRegistry,
        projects: ProjectRepository,
        default_backend: AgentBackend = AgentBackend.CLAUDE,
        template_url: str | None = None,
    ):
        self.provisioner = provisioner
        self.launcher = launcher
        self.store = store
        self.registry = registry
        self.projects = projects
        self.default_backend = default_backend
        self.template_url = template_url
        self.log = get_logger("agent_service")

    @classmethod
    def from_env(
        cls, client: httpx.AsyncClient, provisioner: SandboxProvisioner
    ) -> "AgentService":
        projects = ProjectRepository.from_env(client)
        return cls(
            provisioner,
            AgentLauncher(provisioner, projects),
            EventStore.from_env(client),
            SessionRegistry.from_env(client),
            projects,
            default_backend=AgentBackend(config.default_backend()),
            template_url=config.default_template_url(),
        )

    @staticmethod
    def _needs_sandbox(project: Project, requested_sandbox_id: str | None) -> bool:
        if requested_sandbox_id and requested_sandbox_id == project.sandbox_id:
            return project.sandbox_status in UNUSABLE_SANDBOX_STATUSES
        return not project.sandbox_id or project.sandbox_status in UNUSABLE_SANDBOX_STATUSES

    async def _resolve_session(self, request: CreateAgentRequest, project: Project) -> str | None:
        """
        Session to resume.

        An explicitly requested session must be resumable. The project's last
        session is reused only while it is still active.
        """
        if request.session_id:
            session = await self.registry.resume(request.session_id)
            if session.project_id != project.id:
                raise SessionNotFoundError(request.session_id)
            return session.session_id
        if project.session_id and await self.registry.exists(project.session_id):
            return project.session_id
        return None

    async def create_or_continue(self, request: CreateAgentRequest) -> dict[str, Any]:
        """
        Start or continue an agent turn for a project.

        Raises:
            ProjectNotFoundError: unknown project.
            SessionNotFoundError: the requested session cannot be resumed.
            LaunchRejectedError: an agent is already running for the project.
            ProvisioningError: the sandbox could not be created or started.
        """
        project = await self.projects.require(request.project_id)
        user_id = request.user_id or project.user_id or "anonymous"
        backend = request.backend or project.agent_backend or self.default_backend
        working_directory = request.working_directory or config.default_working_directory()
        new_project = self._needs_sandbox(project, request.sandbox_id)

        if new_project:
            session_id = None
            if request.session_id:
                session_id = (await self.registry.resume(request.session_id)).session_id
        else:
            session_id = await self._resolve_session(request, project)

        await self.launcher.ensure_available(project)

        await self.store.append(
            project.id,
            UserPayload(content=request.prompt, client_message_id=request.client_message_id),
            session_id=session_id,
        )

        job = AgentJob(
            project_id=project.id,
            user_id=user_id,
            prompt=request.prompt,
            working_directory=working_directory,
            backend=backend,
            session_id=session_id,
            model=request.model,
        )

        try:
            if new_project:
                return await self._start_new_project(project, request, job)

            result = await self.launcher.launch_existing_project(
                project,
                job.model_copy(update={"sandbox_id": request.sandbox_id or project.sandbox_id}),
            )
        except Exception as e:
            await self._close_failed_turn(project.id, session_id, e)
            raise

        self.log.info(
            "agent.continue",
            project_id=project.id,
            sandbox_id=result.sandbox_id,
            session_id=session_id,
            pid=result.pid,
        )
        return {
            "status": result.status.value,
            "sandboxId": result.sandbox_id,
            "pid": result.pid,
            "logFile": result.log_path,
            "sessionId": session_id,
        }

    async def _close_failed_turn(
        self, project_id: str, session_id: str | None, error: Exception
    ) -> None:
        """Write the terminal result for a prompt whose agent never started."""
        try:
            await self.store.append(
                project_id,
                ResultPayload(
                    subtype=ResultSubtype.ERROR.value,
                    source=ResultSource.FALLBACK.value,
                    message=f"Agent could not be started: {error}",
                ),
                session_id=session_id,
            )
        except Exception as e:
            self.log.error("agent.fallback_result_error", exc=e, project_id=project_id)

    async def _start_new_project(
        self, project: Project, request: CreateAgentRequest, job: AgentJob
    ) -> dict[str, Any]:
        handle = await self.provisioner.create(project.id, image_id=project.snapshot_image_id)
        await self.projects.update(
            project.id,
            sandbox_id=handle.sandbox_id,
            sandbox_status=SandboxStatus.STARTING,
            preview_url=None,
            agent_pid=None,
        )
        setup = SetupJob(
            project_id=project.id,
            user_id=job.user_id,
            working_directory=job.working_directory,
            template_url=request.template_url or self.template_url,
            preview_host=handle.preview_host,
            restored_from_snapshot=bool(project.snapshot_image_id),
        )
        try:
            result = await self.launcher.launch_new_project(
                project.model_copy(update={"sandbox_id": handle.sandbox_id, "agent_pid": None}),
                handle.sandbox_id,
                setup,
                job,
            )
        except Exception:
            await self.provisioner.destroy(handle.sandbox_id)
            await self.projects.update(project.id, sandbox_status=SandboxStatus.FAILED)
            raise

        self.log.info(
            "agent.create",
            project_id=project.id,
            sandbox_id=handle.sandbox_id,
            setup_pid=result.pid,
            from_snapshot=setup.restored_from_snapshot,
        )
        return {
            "status": result.status.value,
            "sandboxId": result.sandbox_id,
            "setupPid": result.pid,
            "setupLogFile": result.log_path,
        }

    async def stop(self, project_id: str) -> dict[str, Any]:
        """
        Best-effort cancel: signal the tracked PID, record the cancellation, clear the PID.

        Raises:
            NoAgentRunningError: nothing is tracked, or the tracked PID has no sandbox.
        """
        project = await self.projects.require(project_id)
        pid = project.agent_pid
        if pid is None:
            raise NoAgentRunningError(project_id)
        if not project.sandbox_id:
            await self.projects.clear_pid(project_id)
            self.log.warn("agent.stop_stale_pid", project_id=project_id, pid=pid)
            raise NoAgentRunningError(
                project_id, f"No sandbox for project {project_id}; cleared stale process id"
            )

        try:
            found = await self.provisioner.signal_process(project.sandbox_id, pid, "TERM")
        except ProvisioningError as e:
            self.log.warn("agent.stop_sandbox_unreachable", exc=e, project_id=project_id)
            found = False

        await self.store.append(
            project_id,
            ResultPayload(
                subtype=ResultSubtype.CANCELLED.value,
                source=ResultSource.USER_STOP.value,
                message="Task cancelled by user",
            ),
            session_id=project.session_id,
        )
        await self.projects.clear_pid(project_id)
        self.log.info("agent.stop", project_id=project_id, pid=pid, process_found=found)
        return {"stopped": True, "pid": pid, "processFound": found}

    async def events(self, project_id: str, since: datetime | None = None) -> list[Event]:
        await self.projects.require(project_id)
        return await self.store.fetch_since(project_id, since)

    async def get_session(self, session_id: str) -> Session:
        session = await self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def close_sandbox(self, project_id: str) -> dict[str, Any]:
        """Terminate the project's sandbox and complete its active sessions."""
        project = await self.projects.require(project_id)
        destroyed = False
        if project.sandbox_id:
            destroyed = await self.provisioner.destroy(project.sandbox_id)

        completed = []
        for session in await self.registry.list_project_sessions(project_id, active_only=True):
            await self.registry.complete(session.session_id)
            completed.append(session.session_id)

        await self.projects.update(
            project_id,
            sandbox_id=None,
            sandbox_status=SandboxStatus.STOPPED,
            agent_pid=None,
            preview_url=None,
        )
        self.log.info(
            "sandbox.close",
            project_id=project_id,
            sandbox_id=project.sandbox_id,
            destroyed=destroyed,
            completed_sessions=len(completed),
        )
        return {
            "sandboxId": project.sandbox_id,
            "destroyed": destroyed,
            "completedSessions": completed,
        }

    async def snapshot_project(self, project_id: str, sandbox_id: str | None = None) -> str:
        """Snapshot the project's sandbox and remember the image for the next restore."""
        project = await self.projects.require(project_id)
        if not project.sandbox_id:
            raise ValueError(f"Project {project_id} has no sandbox to snapshot")
        if sandbox_id and sandbox_id != project.sandbox_id:
            raise ValueError(f"Sandbox {sandbox_id} does not belong to project {project_id}")

        image_id = await self.provisioner.snapshot(project.sandbox_id)
        await self.projects.update(project_id, snapshot_image_id=image_id)
        return image_id
