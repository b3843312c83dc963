"""Shared fixtures and fakes for the test suite."""

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from src.events.store import EventStore
from src.registry.models import Project
from src.registry.projects import ProjectRepository
from src.registry.sessions import SessionRegistry
from src.sandbox.provisioner import SandboxProvisioner
from src.sandbox.types import CommandResult, SandboxHandle


class MockResponse:
    """Minimal stand-in for an httpx response."""

    def __init__(self, status_code: int = 200, json_data: Any = None):
        self.status_code = status_code
        self._json_data = json_data
        self.content = b"" if json_data is None else json.dumps(json_data).encode()
        self.text = self.content.decode()

    def json(self) -> Any:
        return self._json_data


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


def make_provisioner(pid: int = 4242, preview_host: str = "preview.modal.host") -> MagicMock:
    """Provisioner double with every Modal-facing call replaced by an AsyncMock."""
    provisioner = MagicMock(spec=SandboxProvisioner)
    now = datetime.now(UTC)
    provisioner.create = AsyncMock(
        return_value=SandboxHandle(
            sandbox_id="sb-new",
            created_at=now,
            ready_deadline=now + timedelta(hours=1),
            preview_host=preview_host,
        )
    )
    provisioner.destroy = AsyncMock(return_value=True)
    provisioner.run = AsyncMock(return_value=CommandResult(exit_code=0))
    provisioner.run_detached = AsyncMock(return_value=pid)
    provisioner.upload_file = AsyncMock()
    provisioner.is_process_alive = AsyncMock(return_value=False)
    provisioner.signal_process = AsyncMock(return_value=True)
    provisioner.snapshot = AsyncMock(return_value="im-snapshot-1")
    return provisioner


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> EventStore:
    return EventStore.in_memory()


@pytest.fixture
def registry(clock: ManualClock) -> SessionRegistry:
    return SessionRegistry.in_memory(clock)


@pytest.fixture
def projects() -> ProjectRepository:
    return ProjectRepository.in_memory()


@pytest.fixture
def provisioner() -> MagicMock:
    return make_provisioner()


@pytest_asyncio.fixture
async def project(projects: ProjectRepository) -> Project:
    return await projects.create(Project(id="proj-1", user_id="user-1"))
