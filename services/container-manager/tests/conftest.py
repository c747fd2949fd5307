from pathlib import Path

import pytest

from container_manager.auth import SYSTEM_ACTOR
from container_manager.config import Settings
from container_manager.plane import ControlPlane
from container_manager.runtime import InMemoryRuntime
from container_manager.schemas import DeploymentOverrides, ServiceCreate, ServiceType

TEAM = "team-1"
WORKSPACE = "ws-1"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Force test settings: in-memory database and runtime, no retry delays."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        runtime_backend="memory",
        workspace_root=str(tmp_path),
        retry_backoff_seconds=0,
        build_max_retries=2,
        operation_timeout_seconds=5,
    )


@pytest.fixture
def workspace(tmp_path) -> Path:
    path = tmp_path / WORKSPACE
    path.mkdir()
    return path


@pytest.fixture
def make_folder(workspace):
    """Create a service folder inside the test workspace, optionally with files."""

    def _make(name: str, files: dict[str, str] | None = None) -> str:
        folder = workspace / name
        folder.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {}).items():
            target = folder / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return name

    return _make


@pytest.fixture
def runtime() -> InMemoryRuntime:
    return InMemoryRuntime()


@pytest.fixture
async def plane(settings, runtime):
    plane = ControlPlane.build(settings, runtime=runtime)
    await plane.start()
    yield plane
    await plane.close()


@pytest.fixture
def create_service(plane, make_folder):
    """Create a pending instance through the lifecycle manager."""

    async def _create(
        folder: str = "web",
        service_type: ServiceType = ServiceType.NODEJS,
        overrides: DeploymentOverrides | None = None,
        **fields,
    ):
        make_folder(folder)
        payload = ServiceCreate(
            workspace_id=WORKSPACE,
            folder_path=folder,
            service_type=service_type,
            overrides=overrides or DeploymentOverrides(),
            **fields,
        )
        return await plane.manager.create(SYSTEM_ACTOR, TEAM, payload)

    return _create


@pytest.fixture
def deploy(plane):
    """Start an instance and wait for the background operation to settle."""

    async def _deploy(instance):
        await plane.manager.start(SYSTEM_ACTOR, TEAM, instance.id)
        await plane.manager.wait_idle(instance.id)
        return await plane.store.get_instance(instance.id)

    return _deploy


@pytest.fixture
def settle(plane):
    async def _settle(instance_id: str):
        await plane.manager.wait_idle(instance_id)
        return await plane.store.get_instance(instance_id)

    return _settle
