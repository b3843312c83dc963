"""Tests for the agent launcher and its runtime bundle."""

import asyncio
import io
import json
import tarfile
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.registry.models import Project
from src.registry.projects import ProjectRepository
from src.sandbox.launcher import (
    AgentLauncher,
    LaunchRejectedError,
    build_runtime_bundle,
)
from src.sandbox.provisioner import ProvisioningError
from src.sandbox.types import (
    AgentJob,
    CommandResult,
    LaunchStatus,
    SandboxStatus,
    SetupJob,
)


def bundle_names(data: bytes) -> set[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return set(tar.getnames())


def uploaded(provisioner: MagicMock) -> dict[str, bytes]:
    return {c.args[1]: c.args[2] for c in provisioner.upload_file.await_args_list}


def agent_job(**overrides) -> AgentJob:
    fields = {
        "project_id": "proj-1",
        "user_id": "user-1",
        "prompt": "Add a settings screen",
        "working_directory": "/workspace/project",
    }
    fields.update(overrides)
    return AgentJob(**fields)


def setup_job() -> SetupJob:
    return SetupJob(project_id="proj-1", user_id="user-1", working_directory="/workspace/project")


@pytest.fixture
def launcher(provisioner: MagicMock, projects: ProjectRepository) -> AgentLauncher:
    return AgentLauncher(provisioner, projects)


class TestRuntimeBundle:
    def test_runner_bundle_contains_runner_modules_only(self):
        names = bundle_names(build_runtime_bundle(include_setup=False))

        assert "src/__init__.py" in names
        assert "src/sandbox/runner.py" in names
        assert "src/sandbox/parser.py" in names
        assert "src/events/store.py" in names
        assert "src/registry/sessions.py" in names
        assert "src/sandbox/setup.py" not in names
        assert "src/web_api.py" not in names
        assert not any("__pycache__" in name for name in names)

    def test_setup_bundle_adds_setup_program(self):
        names = bundle_names(build_runtime_bundle(include_setup=True))

        assert "src/sandbox/setup.py" in names
        assert "src/sandbox/runner.py" in names


class TestExistingProject:
    @pytest.mark.asyncio
    async def test_starts_runner_detached_and_returns_processing(
        self, launcher: AgentLauncher, provisioner: MagicMock, projects, project: Project
    ):
        await projects.update(project.id, sandbox_id="sb-1", sandbox_status=SandboxStatus.READY)
        project = await projects.get(project.id)

        result = await launcher.launch_existing_project(project, agent_job(session_id="s-123"))

        assert result.status == LaunchStatus.PROCESSING
        assert result.sandbox_id == "sb-1"
        assert result.pid == 4242
        assert result.log_path == "/tmp/agent-proj-1.log"

        sandbox_id, command, log_path = provisioner.run_detached.await_args.args
        assert sandbox_id == "sb-1"
        assert command.startswith("python -m src.sandbox.runner --job /tmp/agent-jobs/agent-")
        assert log_path == "/tmp/agent-proj-1.log"
        assert provisioner.run_detached.await_args.kwargs["env"]["PYTHONPATH"] == (
            AgentLauncher.RUNTIME_ROOT
        )

        files = uploaded(provisioner)
        assert "src/sandbox/setup.py" not in bundle_names(files[AgentLauncher.BUNDLE_PATH])
        job_path = command.split("--job ")[1]
        job = json.loads(files[job_path])
        assert job["session_id"] == "s-123"
        assert job["sandbox_id"] == "sb-1"
        assert job["prompt"] == "Add a settings screen"

        assert (await projects.get(project.id)).agent_pid == 4242

    @pytest.mark.asyncio
    async def test_requires_a_sandbox(self, launcher: AgentLauncher, project: Project):
        with pytest.raises(ValueError):
            await launcher.launch_existing_project(project, agent_job())

    @pytest.mark.asyncio
    async def test_unpack_failure_is_a_provisioning_error(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        provisioner.run.return_value = CommandResult(exit_code=2, stderr="tar: not found")

        with pytest.raises(ProvisioningError, match="unpack"):
            await launcher.launch_existing_project(project, agent_job(sandbox_id="sb-1"))

        provisioner.run_detached.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_failure_propagates(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        provisioner.run_detached.side_effect = ProvisioningError("no PID returned")

        with pytest.raises(ProvisioningError):
            await launcher.launch_existing_project(project, agent_job(sandbox_id="sb-1"))


class TestNewProject:
    @pytest.mark.asyncio
    async def test_starts_setup_with_chained_agent_job(
        self, launcher: AgentLauncher, provisioner: MagicMock, projects, project: Project
    ):
        result = await launcher.launch_new_project(project, "sb-new", setup_job(), agent_job())

        assert result.status == LaunchStatus.STARTING
        assert result.log_path == "/tmp/setup-proj-1.log"

        command = provisioner.run_detached.await_args.args[1]
        assert command.startswith("python -m src.sandbox.setup --job /tmp/agent-jobs/setup-")

        files = uploaded(provisioner)
        assert "src/sandbox/setup.py" in bundle_names(files[AgentLauncher.BUNDLE_PATH])
        setup = json.loads(files[command.split("--job ")[1]])
        assert setup["agent_job_path"] in files
        chained = json.loads(files[setup["agent_job_path"]])
        assert chained["sandbox_id"] == "sb-new"

        stored = await projects.get(project.id)
        assert stored.agent_pid == 4242
        assert stored.sandbox_id == "sb-new"
        assert stored.sandbox_status == SandboxStatus.STARTING

    @pytest.mark.asyncio
    async def test_setup_without_task(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        await launcher.launch_new_project(project, "sb-new", setup_job())

        files = uploaded(provisioner)
        setup_paths = [p for p in files if "/setup-" in p]
        assert json.loads(files[setup_paths[0]])["agent_job_path"] is None

    @pytest.mark.asyncio
    async def test_pid_write_failure_does_not_fail_launch(
        self, provisioner: MagicMock, project: Project
    ):
        projects = MagicMock(spec=ProjectRepository)
        projects.update = AsyncMock(side_effect=RuntimeError("store down"))
        launcher = AgentLauncher(provisioner, projects)

        result = await launcher.launch_new_project(project, "sb-new", setup_job(), agent_job())

        assert result.pid == 4242


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_live_tracked_process_rejects_launch(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        provisioner.is_process_alive.return_value = True
        busy = project.model_copy(update={"sandbox_id": "sb-1", "agent_pid": 77})

        with pytest.raises(LaunchRejectedError) as exc_info:
            await launcher.launch_existing_project(busy, agent_job())

        assert exc_info.value.project_id == "proj-1"
        provisioner.is_process_alive.assert_awaited_once_with("sb-1", 77)
        provisioner.run_detached.assert_not_called()

    @pytest.mark.asyncio
    async def test_dead_tracked_process_allows_launch(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        stale = project.model_copy(update={"sandbox_id": "sb-1", "agent_pid": 77})

        result = await launcher.launch_existing_project(stale, agent_job())

        assert result.pid == 4242

    @pytest.mark.asyncio
    async def test_unreachable_sandbox_counts_as_not_running(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        provisioner.is_process_alive.side_effect = ProvisioningError("gone")

        await launcher.ensure_available(
            project.model_copy(update={"sandbox_id": "sb-1", "agent_pid": 77})
        )

    @pytest.mark.asyncio
    async def test_overlapping_launches_are_rejected(
        self, launcher: AgentLauncher, provisioner: MagicMock, project: Project
    ):
        release = asyncio.Event()

        async def slow_upload(*args, **kwargs):
            await release.wait()

        provisioner.upload_file.side_effect = slow_upload
        ready = project.model_copy(update={"sandbox_id": "sb-1"})

        first = asyncio.create_task(launcher.launch_existing_project(ready, agent_job()))
        await asyncio.sleep(0)

        with pytest.raises(LaunchRejectedError):
            await launcher.launch_existing_project(ready, agent_job())
        with pytest.raises(LaunchRejectedError):
            await launcher.ensure_available(ready)

        release.set()
        assert (await first).pid == 4242
        await launcher.ensure_available(ready)

    @pytest.mark.asyncio
    async def test_guard_can_be_disabled(
        self, provisioner: MagicMock, projects: ProjectRepository, project: Project
    ):
        provisioner.is_process_alive.return_value = True
        launcher = AgentLauncher(provisioner, projects, enforce_single_flight=False)
        busy = project.model_copy(update={"sandbox_id": "sb-1", "agent_pid": 77})

        result = await launcher.launch_existing_project(busy, agent_job())

        assert result.pid == 4242
        provisioner.is_process_alive.assert_not_called()
