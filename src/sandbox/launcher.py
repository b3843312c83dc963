"""
Agent launcher.

Hands a program to a sandbox and returns as soon as it has a PID. Everything
that happens afterwards (success, crash, timeout) is observed only through
the event store.

The in-sandbox programs are this package's own modules: the launcher packs
the ones a program needs into a tarball, uploads and unpacks it under
RUNTIME_ROOT, uploads a JSON job file and starts
`python -m src.sandbox.<program> --job <path>` detached.
"""

import io
import os
import shlex
import tarfile
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from .. import config
from ..log_config import get_logger
from ..registry.models import Project
from ..registry.projects import ProjectRepository
from .provisioner import ProvisioningError, SandboxProvisioner
from .types import AgentJob, LaunchResult, LaunchStatus, SandboxStatus, SetupJob

PACKAGE_ROOT = Path(__file__).resolve().parent.parent

# Paths relative to the package root
RUNNER_MODULES = (
    "__init__.py",
    "config.py",
    "log_config.py",
    "events",
    "store",
    "registry",
    "sandbox/__init__.py",
    "sandbox/types.py",
    "sandbox/backends.py",
    "sandbox/parser.py",
    "sandbox/snapshots.py",
    "sandbox/runner.py",
)
SETUP_MODULES = ("sandbox/setup.py",)

PASSTHROUGH_ENV = (
    config.EVENT_STORE_URL,
    config.EVENT_STORE_KEY,
    config.SNAPSHOT_ENDPOINT_URL,
    config.RUNNER_FIRST_OUTPUT_TIMEOUT,
    "LOG_LEVEL",
)


class LaunchRejectedError(Exception):
    """Raised when a project already has an agent launch in progress or running."""

    def __init__(self, project_id: str, reason: str):
        self.project_id = project_id
        self.reason = reason
        super().__init__(f"Agent launch rejected for project {project_id}: {reason}")


def build_runtime_bundle(include_setup: bool = False) -> bytes:
    """Tar.gz of the modules the in-sandbox programs import, rooted at `src/`."""
    names = RUNNER_MODULES + (SETUP_MODULES if include_setup else ())
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name in names:
            path = PACKAGE_ROOT / name
            files = sorted(path.rglob("*.py")) if path.is_dir() else [path]
            for file in files:
                arcname = "src/" + file.relative_to(PACKAGE_ROOT).as_posix()
                tar.add(file, arcname=arcname)
    return buffer.getvalue()


class AgentLauncher:
    """
    Starts setup and agent programs inside sandboxes.

    With `enforce_single_flight`, a launch is rejected while the project's
    tracked PID is still alive, and two launches for the same project never
    overlap within this process.
    """

    RUNTIME_ROOT = "/opt/agent-runtime"
    BUNDLE_PATH = "/tmp/agent-runtime.tar.gz"
    JOB_DIR = "/tmp/agent-jobs"
    LOG_DIR = "/tmp"
    PYTHON = "python"

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        projects: ProjectRepository,
        enforce_single_flight: bool = True,
    ):
        self.provisioner = provisioner
        self.projects = projects
        self.enforce_single_flight = enforce_single_flight
        self.log = get_logger("launcher")
        self._in_flight: set[str] = set()

    async def ensure_available(self, project: Project) -> None:
        """
        Raise LaunchRejectedError if the project already has a launch in
        progress or, with `enforce_single_flight`, a live tracked agent process.
        """
        if project.id in self._in_flight:
            raise LaunchRejectedError(project.id, "a launch is already in progress")
        await self._check_tracked_process(project)

    async def _check_tracked_process(self, project: Project) -> None:
        if not (self.enforce_single_flight and project.agent_pid and project.sandbox_id):
            return
        try:
            alive = await self.provisioner.is_process_alive(project.sandbox_id, project.agent_pid)
        except ProvisioningError:
            # The sandbox is gone, so is the process.
            alive = False
        if alive:
            self.log.warn("launcher.rejected", project_id=project.id, pid=project.agent_pid)
            raise LaunchRejectedError(
                project.id, f"agent process {project.agent_pid} is still running"
            )

    @asynccontextmanager
    async def _single_flight(self, project: Project) -> AsyncIterator[None]:
        if project.id in self._in_flight:
            raise LaunchRejectedError(project.id, "a launch is already in progress")
        self._in_flight.add(project.id)
        try:
            await self._check_tracked_process(project)
            yield
        finally:
            self._in_flight.discard(project.id)

    def _env(self) -> dict[str, str]:
        env = {"PYTHONPATH": self.RUNTIME_ROOT}
        for name in PASSTHROUGH_ENV:
            value = os.environ.get(name)
            if value:
                env[name] = value
        return env

    def _program(self, module: str, job_path: str) -> str:
        return f"{self.PYTHON} -m src.sandbox.{module} --job {shlex.quote(job_path)}"

    async def _upload_runtime(self, sandbox_id: str, include_setup: bool) -> None:
        await self.provisioner.upload_file(
            sandbox_id, self.BUNDLE_PATH, build_runtime_bundle(include_setup)
        )
        root = shlex.quote(self.RUNTIME_ROOT)
        result = await self.provisioner.run(
            sandbox_id,
            f"mkdir -p {root} && tar -xzf {shlex.quote(self.BUNDLE_PATH)} -C {root}",
        )
        if result.exit_code != 0:
            raise ProvisioningError(f"Failed to unpack agent runtime: {result.stderr.strip()}")

    async def _upload_job(self, sandbox_id: str, job: AgentJob | SetupJob, kind: str) -> str:
        path = f"{self.JOB_DIR}/{kind}-{uuid.uuid4().hex[:12]}.json"
        await self.provisioner.upload_file(sandbox_id, path, job.model_dump_json().encode())
        return path

    async def _record_pid(self, project_id: str, pid: int, **fields) -> None:
        # The process is already running; a failed write only costs stop/liveness.
        try:
            await self.projects.update(project_id, agent_pid=pid, **fields)
        except Exception as e:
            self.log.error("launcher.record_pid_error", exc=e, project_id=project_id, pid=pid)

    async def launch_new_project(
        self,
        project: Project,
        sandbox_id: str,
        setup: SetupJob,
        job: AgentJob | None = None,
    ) -> LaunchResult:
        """
        Start the setup program, which chains into the runner when `job` is set.

        Returns with status `starting` once the setup program has a PID.
        """
        async with self._single_flight(project):
            await self._upload_runtime(sandbox_id, include_setup=True)
            if job is not None:
                job = job.model_copy(update={"sandbox_id": sandbox_id})
                setup = setup.model_copy(
                    update={"agent_job_path": await self._upload_job(sandbox_id, job, "agent")}
                )
            setup_path = await self._upload_job(sandbox_id, setup, "setup")
            log_path = f"{self.LOG_DIR}/setup-{project.id}.log"
            pid = await self.provisioner.run_detached(
                sandbox_id, self._program("setup", setup_path), log_path, env=self._env()
            )
            await self._record_pid(
                project.id,
                pid,
                sandbox_id=sandbox_id,
                sandbox_status=SandboxStatus.STARTING,
            )

        self.log.info(
            "launcher.setup_started",
            project_id=project.id,
            sandbox_id=sandbox_id,
            pid=pid,
            has_task=job is not None,
        )
        return LaunchResult(
            status=LaunchStatus.STARTING, sandbox_id=sandbox_id, pid=pid, log_path=log_path
        )

    async def launch_existing_project(self, project: Project, job: AgentJob) -> LaunchResult:
        """Start the runner in the project's ready sandbox. Returns status `processing`."""
        sandbox_id = job.sandbox_id or project.sandbox_id
        if not sandbox_id:
            raise ValueError(f"Project {project.id} has no sandbox")

        async with self._single_flight(project):
            await self._upload_runtime(sandbox_id, include_setup=False)
            job = job.model_copy(update={"sandbox_id": sandbox_id})
            job_path = await self._upload_job(sandbox_id, job, "agent")
            log_path = f"{self.LOG_DIR}/agent-{project.id}.log"
            pid = await self.provisioner.run_detached(
                sandbox_id, self._program("runner", job_path), log_path, env=self._env()
            )
            await self._record_pid(project.id, pid)

        self.log.info(
            "launcher.agent_started",
            project_id=project.id,
            sandbox_id=sandbox_id,
            pid=pid,
            backend=job.backend.value,
            resume=bool(job.session_id),
        )
        return LaunchResult(
            status=LaunchStatus.PROCESSING, sandbox_id=sandbox_id, pid=pid, log_path=log_path
        )
