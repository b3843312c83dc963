"""
Sandbox provisioner backed by Modal sandboxes.

Sandboxes have a hard wall-clock lifetime after which Modal reclaims them.
Nothing here can extend it; callers treat expiry as an asynchronous failure
observed through the liveness probe.
"""

import shlex
from datetime import UTC, datetime, timedelta
from pathlib import PurePosixPath
from typing import Any

import modal

from .. import config
from ..log_config import get_logger
from .types import CommandResult, SandboxHandle


class ProvisioningError(Exception):
    """Raised when a sandbox cannot be created, reached or driven."""

    pass


class SandboxProvisioner:
    """Creates, drives and destroys per-project sandboxes."""

    WORKDIR = "/workspace"
    PREVIEW_PORT = 8081
    EXEC_TIMEOUT_SECONDS = 120
    MIN_TIMEOUT_SECONDS = 60.0
    MAX_TIMEOUT_SECONDS = 24 * 3600.0

    def __init__(
        self,
        app: modal.App,
        image: modal.Image,
        secrets: list[modal.Secret] | None = None,
        timeout_seconds: float | None = None,
    ):
        self.app = app
        self.image = image
        self.secrets = secrets or []
        self.log = get_logger("provisioner")
        self.timeout_seconds = timeout_seconds or config.resolve_seconds(
            config.SANDBOX_TIMEOUT_SECONDS,
            config.DEFAULT_SANDBOX_TIMEOUT_SECONDS,
            self.MIN_TIMEOUT_SECONDS,
            self.MAX_TIMEOUT_SECONDS,
            log=self.log,
        )

    async def create(self, project_id: str, image_id: str | None = None) -> SandboxHandle:
        """
        Create a sandbox, optionally from a filesystem snapshot image.

        Raises:
            ProvisioningError: Modal refused or failed the create call.
        """
        image = modal.Image.from_id(image_id) if image_id else self.image
        try:
            sandbox = await modal.Sandbox.create.aio(
                "sleep",
                "infinity",
                app=self.app,
                image=image,
                secrets=self.secrets,
                timeout=int(self.timeout_seconds),
                workdir=self.WORKDIR,
                encrypted_ports=[self.PREVIEW_PORT],
            )
        except Exception as e:
            self.log.error(
                "sandbox.create_error",
                exc=e,
                project_id=project_id,
                from_snapshot=bool(image_id),
            )
            raise ProvisioningError(f"Failed to create sandbox: {e}") from e

        created_at = datetime.now(UTC)
        handle = SandboxHandle(
            sandbox_id=sandbox.object_id,
            created_at=created_at,
            ready_deadline=created_at + timedelta(seconds=self.timeout_seconds),
            preview_host=await self._preview_host(sandbox),
        )
        self.log.info(
            "sandbox.create",
            project_id=project_id,
            sandbox_id=handle.sandbox_id,
            from_snapshot=bool(image_id),
            timeout_s=int(self.timeout_seconds),
        )
        return handle

    async def _preview_host(self, sandbox: Any) -> str | None:
        try:
            tunnels = await sandbox.tunnels.aio()
        except Exception as e:
            self.log.warn("sandbox.tunnel_error", exc=e, sandbox_id=sandbox.object_id)
            return None
        tunnel = tunnels.get(self.PREVIEW_PORT)
        return tunnel.host if tunnel else None

    async def _sandbox(self, sandbox_id: str) -> Any:
        try:
            return await modal.Sandbox.from_id.aio(sandbox_id)
        except Exception as e:
            raise ProvisioningError(f"Sandbox {sandbox_id} is not reachable: {e}") from e

    async def destroy(self, sandbox_id: str) -> bool:
        """Best-effort terminate. Errors are logged and swallowed."""
        try:
            sandbox = await modal.Sandbox.from_id.aio(sandbox_id)
            await sandbox.terminate.aio()
        except Exception as e:
            self.log.warn("sandbox.destroy_error", exc=e, sandbox_id=sandbox_id)
            return False
        self.log.info("sandbox.destroy", sandbox_id=sandbox_id)
        return True

    async def run(
        self,
        sandbox_id: str,
        command: str,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a shell command to completion and collect its output."""
        sandbox = await self._sandbox(sandbox_id)
        secrets = [modal.Secret.from_dict(env)] if env else []
        try:
            process = await sandbox.exec.aio(
                "bash",
                "-lc",
                command,
                timeout=timeout or self.EXEC_TIMEOUT_SECONDS,
                secrets=secrets,
            )
            stdout = await process.stdout.read.aio()
            stderr = await process.stderr.read.aio()
            exit_code = await process.wait.aio()
        except Exception as e:
            self.log.error("sandbox.exec_error", exc=e, sandbox_id=sandbox_id)
            raise ProvisioningError(f"Command failed to run in sandbox {sandbox_id}: {e}") from e
        return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)

    async def run_detached(
        self,
        sandbox_id: str,
        command: str,
        log_path: str,
        env: dict[str, str] | None = None,
    ) -> int:
        """
        Start `command` in the background and return its PID without waiting.

        Raises:
            ProvisioningError: the shell did not report a PID.
        """
        script = f"nohup {command} > {shlex.quote(log_path)} 2>&1 & echo $!"
        result = await self.run(sandbox_id, script, env=env)
        lines = result.stdout.strip().splitlines()
        try:
            pid = int(lines[-1].strip())
        except (IndexError, ValueError):
            self.log.error(
                "sandbox.detach_error",
                sandbox_id=sandbox_id,
                exit_code=result.exit_code,
                stderr=result.stderr[-500:],
            )
            raise ProvisioningError(
                "Failed to start background process (no PID returned)"
            ) from None
        self.log.info("sandbox.detach", sandbox_id=sandbox_id, pid=pid, log_path=log_path)
        return pid

    async def upload_file(self, sandbox_id: str, path: str, data: bytes) -> None:
        parent = str(PurePosixPath(path).parent)
        await self.run(sandbox_id, f"mkdir -p {shlex.quote(parent)}")
        sandbox = await self._sandbox(sandbox_id)
        try:
            handle = await sandbox.open.aio(path, "wb")
            try:
                await handle.write.aio(data)
            finally:
                await handle.close.aio()
        except Exception as e:
            self.log.error("sandbox.upload_error", exc=e, sandbox_id=sandbox_id, path=path)
            raise ProvisioningError(f"Failed to upload {path}: {e}") from e
        self.log.debug("sandbox.upload", sandbox_id=sandbox_id, path=path, size=len(data))

    async def is_process_alive(self, sandbox_id: str, pid: int) -> bool:
        """
        Whether `pid` still exists inside the sandbox.

        Raises:
            ProvisioningError: the sandbox itself is gone or unreachable.
        """
        result = await self.run(
            sandbox_id, f"kill -0 {int(pid)} 2>/dev/null && echo alive || echo gone"
        )
        return result.stdout.strip().endswith("alive")

    async def signal_process(self, sandbox_id: str, pid: int, signal_name: str = "TERM") -> bool:
        """Send a signal to `pid`. Returns False when the process was not found."""
        result = await self.run(
            sandbox_id,
            f'kill -{signal_name} {int(pid)} 2>/dev/null || echo "Process not found"',
        )
        found = "Process not found" not in result.stdout
        self.log.info(
            "sandbox.signal",
            sandbox_id=sandbox_id,
            pid=pid,
            signal_name=signal_name,
            found=found,
        )
        return found

    async def snapshot(self, sandbox_id: str) -> str:
        """Snapshot the sandbox filesystem and return the resulting image id."""
        sandbox = await self._sandbox(sandbox_id)
        try:
            image = await sandbox.snapshot_filesystem.aio()
        except Exception as e:
            self.log.error("sandbox.snapshot_error", exc=e, sandbox_id=sandbox_id)
            raise ProvisioningError(f"Failed to snapshot sandbox {sandbox_id}: {e}") from e
        self.log.info("sandbox.snapshot", sandbox_id=sandbox_id, image_id=image.object_id)
        return image.object_id
