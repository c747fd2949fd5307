"""Workspace folder analysis router."""

from fastapi import APIRouter, Depends, Query

from ..auth import Actor, authorize
from ..detection import TopologyAnalyzer
from ..dependencies import get_actor, get_analyzer, get_store
from ..schemas import AnalyzeRequest, TopologyAnalysisRead
from ..store import ServiceStore

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.post("/{workspace_id}/analyze", response_model=TopologyAnalysisRead)
async def analyze_folder(
    workspace_id: str,
    request: AnalyzeRequest,
    actor: Actor = Depends(get_actor),
    analyzer: TopologyAnalyzer = Depends(get_analyzer),
) -> TopologyAnalysisRead:
    """Scan a workspace folder and store a new topology analysis owned by the team."""
    analysis = await analyzer.analyze(actor, request.team_id, workspace_id, request.folder_path)
    return TopologyAnalysisRead.from_record(analysis)


@router.get("/{workspace_id}/analyses", response_model=list[TopologyAnalysisRead])
async def list_analyses(
    workspace_id: str,
    team_id: str = Query(..., min_length=1, description="Team that owns the analyses"),
    actor: Actor = Depends(get_actor),
    store: ServiceStore = Depends(get_store),
) -> list[TopologyAnalysisRead]:
    """List the team's prior analyses of the workspace, newest first."""
    authorize(actor, team_id, "read")
    analyses = await store.list_analyses(team_id, workspace_id)
    return [TopologyAnalysisRead.from_record(a) for a in analyses]
