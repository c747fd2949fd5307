"""Service instances router.

Actions that build, deploy, restart or scale return as soon as the operation
is accepted; progress is visible through the events channel and GET status.
"""

from fastapi import APIRouter, Depends, Query, Response, status

from ..auth import Actor
from ..dependencies import get_actor, get_manager, get_monitor
from ..errors import ContainerRuntimeError
from ..lifecycle import LifecycleManager
from ..models import DeploymentEvent, ServiceInstance
from ..monitoring import ServiceMonitor
from ..schemas import (
    DeploymentEventRead,
    HealthReport,
    LogsRead,
    MetricsReport,
    ScaleRequest,
    ServiceCreate,
    ServiceRead,
    ServiceUpdate,
    StatusRead,
)

router = APIRouter(prefix="/teams/{team_id}/services", tags=["services"])


@router.post("", response_model=ServiceRead, status_code=status.HTTP_201_CREATED)
async def create_service(
    team_id: str,
    service_in: ServiceCreate,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    """Create a service instance in `pending`, explicitly or from an analysis."""
    return await manager.create(actor, team_id, service_in)


@router.get("", response_model=list[ServiceRead])
async def list_services(
    team_id: str,
    workspace_id: str | None = Query(None, description="Filter by workspace ID"),
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> list[ServiceInstance]:
    """List the team's service instances (deleted ones only when asked by status)."""
    return await manager.list_instances(
        actor, team_id, workspace_id=workspace_id, status=status_filter
    )


@router.get("/{service_id}", response_model=ServiceRead)
async def get_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    return await manager.get(actor, team_id, service_id)


@router.put("/{service_id}", response_model=ServiceRead)
async def update_service(
    team_id: str,
    service_id: str,
    service_update: ServiceUpdate,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    """Rename or re-configure. Config changes take effect on the next deploy."""
    return await manager.update(actor, team_id, service_id, service_update)


@router.delete("/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> Response:
    """Stop (best effort) and soft-delete the instance."""
    await manager.delete(actor, team_id, service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# === Lifecycle actions ===


@router.post("/{service_id}/start", response_model=ServiceRead)
async def start_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    return await manager.start(actor, team_id, service_id)


@router.post("/{service_id}/deploy", response_model=ServiceRead)
async def deploy_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    """Build and deploy a pending or stopped instance."""
    return await manager.deploy(actor, team_id, service_id)


@router.post("/{service_id}/stop", response_model=ServiceRead)
async def stop_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    return await manager.stop(actor, team_id, service_id)


@router.post("/{service_id}/restart", response_model=ServiceRead)
async def restart_service(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    return await manager.restart(actor, team_id, service_id)


@router.post("/{service_id}/scale", response_model=ServiceRead)
async def scale_service(
    team_id: str,
    service_id: str,
    scale_in: ScaleRequest,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> ServiceInstance:
    return await manager.scale(actor, team_id, service_id, scale_in.replica_count)


# === Observability ===


@router.get("/{service_id}/status", response_model=StatusRead)
async def get_service_status(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> StatusRead:
    return await manager.status(actor, team_id, service_id)


@router.get("/{service_id}/logs", response_model=LogsRead)
async def get_service_logs(
    team_id: str,
    service_id: str,
    lines: int = Query(100, ge=1, le=10_000),
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> LogsRead:
    """Tail of the primary container's output. Empty until a container exists."""
    instance = await manager.get(actor, team_id, service_id)
    logs = ""
    if instance.container_id is not None:
        try:
            logs = await manager.executor.logs(instance, lines)
        except ContainerRuntimeError as e:
            if e.code != "not_found":
                raise
    return LogsRead(service_id=instance.id, lines=lines, logs=logs)


@router.get("/{service_id}/metrics", response_model=MetricsReport)
async def get_service_metrics(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
    monitor: ServiceMonitor = Depends(get_monitor),
) -> MetricsReport:
    instance = await manager.get(actor, team_id, service_id)
    return monitor.metrics_report(instance)


@router.get("/{service_id}/health", response_model=HealthReport)
async def get_service_health(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
    monitor: ServiceMonitor = Depends(get_monitor),
) -> HealthReport:
    instance = await manager.get(actor, team_id, service_id)
    return monitor.health_report(instance)


@router.get("/{service_id}/events", response_model=list[DeploymentEventRead])
async def list_service_events(
    team_id: str,
    service_id: str,
    actor: Actor = Depends(get_actor),
    manager: LifecycleManager = Depends(get_manager),
) -> list[DeploymentEvent]:
    """The instance's deployment event log, oldest first. Kept after deletion."""
    return await manager.events(actor, team_id, service_id)
