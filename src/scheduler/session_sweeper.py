"""
Scheduled maintenance for sessions and detached agents.

- sweep_expired_sessions: every 10 minutes, marks active sessions idle longer
  than SESSION_MAX_AGE_SECONDS as expired.
- probe_running_agents: every minute, checks every tracked agent PID and
  closes out runs whose process or sandbox disappeared without a result.
"""

from datetime import timedelta

import httpx
import modal

from .. import config
from ..app import app, event_store_secret, function_image, sandbox_provisioner
from ..events.store import EventStore
from ..log_config import configure_logging, get_logger
from ..registry.projects import ProjectRepository
from ..registry.sessions import SessionRegistry
from ..sandbox.liveness import LivenessProbe
from ..sandbox.provisioner import SandboxProvisioner

log = get_logger("scheduler")

MIN_SESSION_MAX_AGE_SECONDS = 60.0
MAX_SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600.0


def session_max_age() -> timedelta:
    seconds = config.resolve_seconds(
        config.SESSION_MAX_AGE_SECONDS,
        config.DEFAULT_SESSION_MAX_AGE_SECONDS,
        MIN_SESSION_MAX_AGE_SECONDS,
        MAX_SESSION_MAX_AGE_SECONDS,
        log=log,
    )
    return timedelta(seconds=seconds)


async def run_session_sweep(registry: SessionRegistry, max_age: timedelta) -> dict:
    expired = await registry.sweep_expired(max_age)
    log.info("sweep.complete", expired=expired, max_age_s=int(max_age.total_seconds()))
    return {"expired": expired}


async def run_liveness_probe(
    provisioner: SandboxProvisioner,
    projects: ProjectRepository,
    registry: SessionRegistry,
    store: EventStore,
) -> dict[str, int]:
    probe = LivenessProbe(provisioner, projects, registry, store)
    return await probe.probe_all()


@app.function(
    image=function_image,
    secrets=[event_store_secret],
    schedule=modal.Period(minutes=10),
    timeout=300,
)
async def sweep_expired_sessions() -> dict:
    """Expire sessions whose last activity is older than the configured max age."""
    configure_logging()
    async with httpx.AsyncClient() as client:
        return await run_session_sweep(SessionRegistry.from_env(client), session_max_age())


@app.function(
    image=function_image,
    secrets=[event_store_secret],
    schedule=modal.Period(minutes=1),
    timeout=120,
)
async def probe_running_agents() -> dict:
    """Write a terminal error result for agents that died without one."""
    configure_logging()
    async with httpx.AsyncClient() as client:
        return await run_liveness_probe(
            sandbox_provisioner(),
            ProjectRepository.from_env(client),
            SessionRegistry.from_env(client),
            EventStore.from_env(client),
        )
