"""Pydantic schemas for topology analysis results."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.base import ensure_utc
from .service import HealthCheckConfig, ResourceLimits, ServiceType

DeploymentStrategy = Literal["single_container", "multi_service", "none"]


class PatternSummary(BaseModel):
    languages: list[str] = Field(default_factory=list)
    frameworks: list[str] = Field(default_factory=list)
    databases: list[str] = Field(default_factory=list)


class ServiceNode(BaseModel):
    id: str
    name: str
    type: ServiceType
    port: int | None = None
    file_path: str
    confidence: float


class ServiceEdge(BaseModel):
    source: str
    target: str
    relation: Literal["connects_to"] = "connects_to"


class ServiceGraph(BaseModel):
    nodes: list[ServiceNode] = Field(default_factory=list)
    edges: list[ServiceEdge] = Field(default_factory=list)


class ServiceRecommendation(BaseModel):
    """One candidate service with deployment defaults. Never mutated."""

    model_config = ConfigDict(frozen=True)

    name: str
    service_type: ServiceType
    confidence: float = Field(ge=0.0, le=1.0)
    # Folder of the service, relative to the analyzed folder ("." for the root)
    folder_path: str
    explicit_manifest: bool = False
    framework: str | None = None
    ports: dict[str, int | None] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, str] = Field(default_factory=dict)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    build_file: str = ""


class AnalysisResult(BaseModel):
    """Output of one analyzer run, before it is stored."""

    patterns: PatternSummary
    graph: ServiceGraph
    recommendations: list[ServiceRecommendation]
    deployment_strategy: DeploymentStrategy


class TopologyAnalysisRead(AnalysisResult):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    workspace_id: str
    folder_path: str
    analyzed_at: datetime

    @field_validator("analyzed_at")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @classmethod
    def from_record(cls, analysis: Any) -> "TopologyAnalysisRead":
        """Build from a stored TopologyAnalysis row, whose result column holds the rest."""
        return cls(
            id=analysis.id,
            team_id=analysis.team_id,
            workspace_id=analysis.workspace_id,
            folder_path=analysis.folder_path,
            analyzed_at=analysis.analyzed_at,
            **analysis.result,
        )


class AnalyzeRequest(BaseModel):
    team_id: str = Field(min_length=1)
    folder_path: str = Field(min_length=1)
