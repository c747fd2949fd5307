"""Deployment specification builder.

Merges a recommendation with user overrides into a fully resolved
`DeploymentConfig`. Map fields merge key by key; scalar fields are replaced.
"""

from typing import Any

from pydantic import ValidationError as PydanticValidationError
import structlog

from .config import Settings
from .detection.dockerfiles import DEFAULT_PORTS, generate_dockerfile
from .errors import ValidationError
from .schemas import (
    DeploymentConfig,
    DeploymentOverrides,
    HealthCheckConfig,
    ServiceRecommendation,
    ServiceType,
)
from .store import ServiceStore

logger = structlog.get_logger()


def _merge_section(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    merged.update(override)
    return merged


def merge_config(base: DeploymentConfig, overrides: DeploymentOverrides) -> DeploymentConfig:
    """Apply overrides on top of a config; raises ValidationError on a bad result."""
    data = base.model_dump()
    for field in ("ports", "env", "volumes"):
        value = getattr(overrides, field)
        if value is not None:
            data[field] = _merge_section(data[field], value)
    for field in ("resources", "health_check", "scaling"):
        value = getattr(overrides, field)
        if value is not None:
            data[field] = _merge_section(data[field], value.model_dump(exclude_none=True))
    for field in ("build_file", "metrics_retention"):
        value = getattr(overrides, field)
        if value is not None:
            data[field] = value

    try:
        return DeploymentConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid deployment configuration",
            code="invalid_config",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors(include_url=False)
            ],
        ) from e


def config_from_recommendation(
    recommendation: ServiceRecommendation, metrics_retention: int | None = None
) -> DeploymentConfig:
    health_check = recommendation.health_check
    if health_check.port is None and recommendation.ports:
        first = min(int(key.split("/")[0]) for key in recommendation.ports)
        health_check = health_check.model_copy(update={"port": first})
    config = DeploymentConfig(
        ports=dict(recommendation.ports),
        env=dict(recommendation.env),
        volumes=dict(recommendation.volumes),
        resources=recommendation.resources,
        health_check=health_check,
        build_file=recommendation.build_file,
    )
    if metrics_retention is not None:
        config.metrics_retention = metrics_retention
    return config


class DeploymentSpecBuilder:
    """Builds deployment configs and validates host ports within a workspace."""

    def __init__(self, store: ServiceStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings

    async def build(
        self,
        recommendation: ServiceRecommendation,
        overrides: DeploymentOverrides | None = None,
        *,
        workspace_id: str,
        exclude_instance_id: str | None = None,
    ) -> DeploymentConfig:
        config = merge_config(
            config_from_recommendation(
                recommendation, self.settings.metrics_retention if self.settings else None
            ),
            overrides or DeploymentOverrides(),
        )
        await self.validate_ports(config, workspace_id, exclude_instance_id)
        return config

    async def validate_ports(
        self,
        config: DeploymentConfig,
        workspace_id: str,
        exclude_instance_id: str | None = None,
    ) -> None:
        """Every requested host port must be free among non-deleted instances of the workspace."""
        requested = [p for p in config.ports.values() if p is not None]
        duplicates = sorted({p for p in requested if requested.count(p) > 1})
        if duplicates:
            raise ValidationError(
                f"Host port(s) {duplicates} mapped more than once",
                code="port_conflict",
                ports=duplicates,
            )

        in_use = await self.store.host_ports_in_use(workspace_id, exclude_instance_id)
        clashes = {port: in_use[port] for port in requested if port in in_use}
        if clashes:
            logger.info("port_conflict_detected", workspace_id=workspace_id, ports=sorted(clashes))
            raise ValidationError(
                f"Host port(s) {sorted(clashes)} already in use in workspace '{workspace_id}'",
                code="port_conflict",
                ports=sorted(clashes),
                held_by=sorted(set(clashes.values())),
            )


def default_recommendation(
    name: str, service_type: ServiceType, confidence: float = 1.0
) -> ServiceRecommendation:
    """Recommendation for an explicitly declared service, from per-type defaults."""
    port = DEFAULT_PORTS.get(service_type.value)
    build_file = ""
    if service_type != ServiceType.COMPOSE_STACK:
        build_file = generate_dockerfile(service_type.value, port=port, name=name)
    return ServiceRecommendation(
        name=name,
        service_type=service_type,
        confidence=confidence,
        folder_path=".",
        explicit_manifest=True,
        ports={str(port): port} if port else {},
        health_check=HealthCheckConfig(port=port),
        build_file=build_file,
    )
