#!/usr/bin/env python3
"""
Environment setup program - prepares a fresh sandbox for a project.

Started detached by the launcher on the new-project path. Steps:
1. Fetch the project template (skipped when restored from a snapshot image)
2. Install dependencies
3. Start the preview server in the background and wait for it
4. Mark the project ready and announce it with a system event
5. Replace itself with the agent runner when a task was supplied

Progress is reported only through project-level system events.
"""

import argparse
import asyncio
import os
import shlex
import sys
import time
from pathlib import Path

import httpx

from ..events.models import ResultPayload, ResultSource, ResultSubtype, SystemPayload
from ..events.store import EventStore
from ..events.writer import EventWriter
from ..log_config import configure_logging, get_logger
from ..registry.projects import ProjectRepository
from .parser import extract_preview_url
from .types import SandboxStatus, SetupJob


class SetupError(Exception):
    """Raised when a setup step fails."""

    pass


class EnvironmentSetup:
    """Runs the setup steps for one sandbox."""

    CLONE_TIMEOUT_SECONDS = 120
    INSTALL_TIMEOUT_SECONDS = 600
    PREVIEW_READY_TIMEOUT_SECONDS = 60.0
    PREVIEW_POLL_SECONDS = 2.0
    PREVIEW_LOG_PATH = "/tmp/preview.log"
    READY_MARKERS = ("Metro", "Tunnel ready", "exp://")
    OUTPUT_TAIL_LINES = 30

    def __init__(self, job: SetupJob, store: EventStore, projects: ProjectRepository):
        self.job = job
        self.projects = projects
        self.workdir = Path(job.working_directory)
        self.log = get_logger("setup", service="sandbox", project_id=job.project_id)
        self.writer = EventWriter(store, job.project_id, log=self.log)
        self.preview_process: asyncio.subprocess.Process | None = None

    async def message(self, text: str, subtype: str = "info") -> None:
        await self.writer.write(SystemPayload(message=text, subtype=subtype))

    async def _run_step(self, name: str, command: str, timeout: int, cwd: Path | None = None):
        self.log.info("setup.step_start", step=name)
        start = time.time()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            self.log.error("setup.step_timeout", step=name, timeout_seconds=timeout)
            raise SetupError(f"{name} timed out after {timeout}s") from None

        output_tail = "\n".join(
            stdout.decode(errors="replace").splitlines()[-self.OUTPUT_TAIL_LINES :]
        )
        if process.returncode != 0:
            self.log.error(
                "setup.step_failed",
                step=name,
                exit_code=process.returncode,
                output_tail=output_tail,
            )
            raise SetupError(f"{name} failed with exit code {process.returncode}")
        self.log.info(
            "setup.step_complete",
            step=name,
            duration_ms=int((time.time() - start) * 1000),
        )

    async def fetch_template(self) -> None:
        if self.job.restored_from_snapshot:
            self.log.info("setup.template_skip", reason="restored_from_snapshot")
            return
        if not self.job.template_url:
            self.log.info("setup.template_skip", reason="no_template")
            self.workdir.mkdir(parents=True, exist_ok=True)
            return
        if self.workdir.exists() and any(self.workdir.iterdir()):
            self.log.info("setup.template_skip", reason="workdir_not_empty")
            return

        self.workdir.parent.mkdir(parents=True, exist_ok=True)
        await self._run_step(
            "clone",
            f"git clone --depth 1 {shlex.quote(self.job.template_url)} "
            f"{shlex.quote(str(self.workdir))}",
            self.CLONE_TIMEOUT_SECONDS,
        )

    async def install(self) -> None:
        for command in self.job.install_commands:
            await self._run_step(command, command, self.INSTALL_TIMEOUT_SECONDS, cwd=self.workdir)

    async def start_preview(self) -> str | None:
        """Start the preview server detached and wait for a readiness marker."""
        if not self.job.preview_command:
            return None

        env = dict(os.environ)
        if self.job.preview_host:
            env["EXPO_PACKAGER_PROXY_URL"] = f"https://{self.job.preview_host}"
        log_file = open(self.PREVIEW_LOG_PATH, "wb")
        try:
            self.preview_process = await asyncio.create_subprocess_shell(
                self.job.preview_command,
                cwd=self.workdir,
                env=env,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            log_file.close()
        self.log.info("preview.start", pid=self.preview_process.pid)

        deadline = time.monotonic() + self.PREVIEW_READY_TIMEOUT_SECONDS
        log_path = Path(self.PREVIEW_LOG_PATH)
        output = ""
        while time.monotonic() < deadline:
            output = log_path.read_text(errors="replace") if log_path.exists() else ""
            if any(marker in output for marker in self.READY_MARKERS):
                self.log.info("preview.ready")
                break
            if self.preview_process.returncode is not None:
                raise SetupError(
                    f"Preview server exited with code {self.preview_process.returncode}"
                )
            await asyncio.sleep(self.PREVIEW_POLL_SECONDS)
        else:
            self.log.warn("preview.ready_timeout", timeout_s=self.PREVIEW_READY_TIMEOUT_SECONDS)

        url = extract_preview_url(output)
        if url is None and self.job.preview_host:
            url = f"exp://{self.job.preview_host}"
        return url

    async def fail(self, error: Exception) -> None:
        self.log.error("setup.failed", exc=error)
        await self.message(f"Environment setup failed: {error}", subtype="error")
        try:
            await self.projects.update(
                self.job.project_id, sandbox_status=SandboxStatus.FAILED, agent_pid=None
            )
        except Exception as e:
            self.log.error("setup.status_error", exc=e)
        if self.job.agent_job_path:
            # The queued task will never run; close it for the client.
            await self.writer.write(
                ResultPayload(
                    subtype=ResultSubtype.ERROR.value,
                    source=ResultSource.FALLBACK.value,
                    message=str(error),
                )
            )

    async def run(self) -> bool:
        """Run every step. Returns True when the environment is ready."""
        start = time.time()
        self.log.info(
            "setup.start",
            restored_from_snapshot=self.job.restored_from_snapshot,
            has_task=bool(self.job.agent_job_path),
        )
        try:
            await self.message("Creating development environment...")
            await self.fetch_template()

            await self.message("Installing dependencies...")
            await self.install()

            await self.message("Starting Expo Metro bundler...")
            preview_url = await self.start_preview()

            await self.projects.update(
                self.job.project_id,
                sandbox_status=SandboxStatus.READY,
                preview_url=preview_url,
            )
            await self.writer.write(
                SystemPayload(
                    message="✓ Ready! Scan the QR code to preview your app on your phone.",
                    subtype="success",
                    preview_url=preview_url,
                )
            )
        except Exception as e:
            await self.fail(e)
            return False

        self.log.info(
            "setup.complete",
            duration_ms=int((time.time() - start) * 1000),
            preview_url=preview_url,
        )
        return True

    def chain_into_runner(self) -> None:
        """Replace this process with the agent runner, keeping the tracked PID."""
        argv = [sys.executable, "-m", "src.sandbox.runner", "--job", self.job.agent_job_path]
        self.log.info("setup.chain_runner", job_path=self.job.agent_job_path)
        os.execv(sys.executable, argv)


def load_job(path: str) -> SetupJob:
    return SetupJob.model_validate_json(Path(path).read_text())


async def main():
    """Entry point for the setup program."""
    parser = argparse.ArgumentParser(description="Sandbox environment setup")
    parser.add_argument("--job", required=True, help="Path to the setup job JSON file")
    args = parser.parse_args()

    configure_logging()
    job = load_job(args.job)

    async with httpx.AsyncClient() as client:
        projects = ProjectRepository.from_env(client)
        setup = EnvironmentSetup(job, EventStore.from_env(client), projects)
        ready = await setup.run()

        if ready and job.agent_job_path:
            await setup.message("Starting AI agent...")
        elif ready:
            await projects.clear_pid(job.project_id, expected_pid=os.getpid())

    # Exec outside the client context so its connections are closed first.
    if ready and job.agent_job_path:
        setup.chain_into_runner()
    return 0 if ready else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
