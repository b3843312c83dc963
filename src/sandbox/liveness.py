"""
Liveness probe for detached agent processes.

A runner that dies before writing its terminal result leaves clients
waiting. The probe checks every tracked PID and, when the process (or its
whole sandbox) is gone without a result, writes a synthetic error result on
its behalf.
"""

from collections import Counter
from enum import Enum

from ..events.models import EventType, ResultPayload, ResultSource, ResultSubtype
from ..events.store import EventStore
from ..log_config import get_logger
from ..registry.models import Project
from ..registry.projects import ProjectRepository
from ..registry.sessions import SessionRegistry
from .provisioner import ProvisioningError, SandboxProvisioner
from .types import SandboxStatus


class ProbeOutcome(str, Enum):
    ALIVE = "alive"
    VANISHED = "vanished"
    SANDBOX_GONE = "sandbox_gone"
    CLEARED = "cleared"
    SKIPPED = "skipped"


class LivenessProbe:
    PROCESS_VANISHED_MESSAGE = "Agent process exited without reporting a result"
    SANDBOX_GONE_MESSAGE = "Sandbox is no longer available"

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        projects: ProjectRepository,
        registry: SessionRegistry,
        store: EventStore,
    ):
        self.provisioner = provisioner
        self.projects = projects
        self.registry = registry
        self.store = store
        self.log = get_logger("liveness")

    async def check(self, project: Project) -> ProbeOutcome:
        pid = project.agent_pid
        if pid is None:
            return ProbeOutcome.SKIPPED

        sandbox_gone = project.sandbox_id is None
        if not sandbox_gone:
            try:
                if await self.provisioner.is_process_alive(project.sandbox_id, pid):
                    return ProbeOutcome.ALIVE
            except ProvisioningError as e:
                self.log.info("liveness.sandbox_unreachable", exc=e, project_id=project.id)
                sandbox_gone = True

        latest = await self.store.latest(project.id)
        if latest is not None and latest.event_type == EventType.RESULT:
            # Exited normally but never cleared its PID.
            await self.projects.clear_pid(project.id, expected_pid=pid)
            self.log.info("liveness.stale_pid", project_id=project.id, pid=pid)
            return ProbeOutcome.CLEARED

        message = self.SANDBOX_GONE_MESSAGE if sandbox_gone else self.PROCESS_VANISHED_MESSAGE
        await self.store.append(
            project.id,
            ResultPayload(
                subtype=ResultSubtype.PROCESS_VANISHED.value,
                source=ResultSource.LIVENESS.value,
                message=message,
            ),
            session_id=project.session_id,
        )
        if project.session_id:
            await self.registry.error(project.session_id, message)
        await self.projects.clear_pid(project.id, expected_pid=pid)
        if sandbox_gone and project.sandbox_id:
            await self.projects.update(project.id, sandbox_status=SandboxStatus.EXPIRED)

        self.log.warn(
            "liveness.process_vanished",
            project_id=project.id,
            session_id=project.session_id,
            pid=pid,
            sandbox_gone=sandbox_gone,
        )
        return ProbeOutcome.SANDBOX_GONE if sandbox_gone else ProbeOutcome.VANISHED

    async def probe_all(self) -> dict[str, int]:
        """Check every project with a tracked PID. Returns counts per outcome."""
        counts: Counter[str] = Counter()
        for project in await self.projects.list_running_agents():
            try:
                outcome = await self.check(project)
            except Exception as e:
                self.log.error("liveness.check_error", exc=e, project_id=project.id)
                counts["error"] += 1
                continue
            counts[outcome.value] += 1
        self.log.info("liveness.probe", **counts)
        return dict(counts)
