from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

from pydantic import ValidationError
import pytest

from container_manager.schemas import (
    DeploymentConfig,
    HealthCheckConfig,
    ResourceLimits,
    ScalingConfig,
    ServiceCreate,
    ServiceRead,
)


def test_resource_limits_accept_quantities():
    limits = ResourceLimits(memory="1Gi", cpu="500m")
    assert limits.memory_mb == 1024
    assert limits.cpu_cores == 0.5
    assert limits.storage_mb is None


def test_resource_limits_reject_out_of_range():
    with pytest.raises(ValidationError):
        ResourceLimits(memory_mb=16)


@pytest.mark.parametrize("ports", [{"abc": 80}, {"3000": 70000}, {"0": 80}])
def test_deployment_config_rejects_bad_ports(ports):
    with pytest.raises(ValidationError):
        DeploymentConfig(ports=ports)


def test_port_helpers():
    config = DeploymentConfig(ports={"8080/tcp": 9000, "3000": 8080, "9229": None})

    assert config.host_ports() == [8080, 9000]
    assert config.primary_container_port() == 3000
    assert config.host_port_for(8080) == 9000
    assert config.host_port_for(9229) is None


def test_health_check_bounds():
    with pytest.raises(ValidationError):
        HealthCheckConfig(interval_seconds=1)
    with pytest.raises(ValidationError):
        HealthCheckConfig(retries=11)


def test_scaling_bounds():
    with pytest.raises(ValidationError):
        ScalingConfig(min_replicas=5, max_replicas=2)


class TestServiceCreate:
    def test_explicit_fields_required_without_analysis(self):
        with pytest.raises(ValidationError) as exc:
            ServiceCreate(workspace_id="ws-1")
        assert "folder_path" in str(exc.value)

    def test_analysis_reference_is_enough(self):
        payload = ServiceCreate(analysis_id="a1", recommendation_index=2)
        assert payload.overrides.ports is None

    def test_name_pattern(self):
        with pytest.raises(ValidationError):
            ServiceCreate(
                workspace_id="ws-1", folder_path="api", service_type="python", name="bad name"
            )


def _row(**overrides):
    fields = {
        "id": "svc-1",
        "team_id": "team-1",
        "workspace_id": "ws-1",
        "name": "api",
        "folder_path": "api",
        "service_type": "python",
        "confidence": 0.9,
        "status": "running",
        "container_id": "c1",
        "image_id": "sha256:abc",
        "deployment_config": DeploymentConfig().model_dump(mode="json"),
        "created_at": None,
        "updated_at": None,
        "deployed_at": datetime.now(UTC) - timedelta(seconds=30),
        "stopped_at": None,
        "last_health_check_at": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_uptime_only_while_running():
    running = ServiceRead.model_validate(_row())
    stopped = ServiceRead.model_validate(_row(status="stopped"))

    assert running.uptime_seconds >= 30
    assert stopped.uptime_seconds is None


def test_naive_timestamps_are_read_as_utc():
    naive = datetime(2024, 1, 1, 12, 0, 0)
    read = ServiceRead.model_validate(_row(status="stopped", stopped_at=naive))
    assert read.stopped_at.tzinfo is not None
