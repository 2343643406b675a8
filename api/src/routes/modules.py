import logging
from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, List, Optional

from api.src.deps import (
    get_gateway,
    get_group_store,
    get_locks,
    get_monitor,
    get_orchestrator,
    http_error,
)
from api.src.models.pipeline import EnvironmentStage, ProjectRef
from api.src.models.schemas import (
    DeploymentOutcome,
    DeployRequest,
    GroupOut,
    OverviewResponse,
    PromoteRequest,
    PromotionOutcome,
    ReleaseOutcome,
    ReleaseRequest,
)
from api.src.services.aggregation import bucket_pipelines, find_bucket
from api.src.services.errors import (
    BranchPreconditionError,
    OperationInProgressError,
    PromotionBlockedError,
    ValidationFailedError,
)
from api.src.services.fanout import fan_out
from api.src.services.fetcher import PipelineSnapshotFetcher
from api.src.services.gates import EnvironmentGateCoordinator
from api.src.services.gitlab import GitLabClient, GitLabError
from api.src.services.locks import OperationLocks
from api.src.services.orchestrator import DeploymentOrchestrator
from api.src.services.scheduler import PipelineMonitor
from api.src.services.store import GroupStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/modules", tags=["modules"])

async def _require_group(store: GroupStore, group_id: int) -> GroupOut:
    group = await store.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return group

async def _project_refs(gateway: GitLabClient, group: GroupOut) -> List[ProjectRef]:
    async def ref(project_id: int) -> ProjectRef:
        try:
            project = await gateway.get_project(project_id)
        except GitLabError as e:
            logger.warning(f"Failed to fetch project {project_id}: {e.detail}")
            project = {}
        return ProjectRef(
            id=project_id,
            name=project.get("name") or f"ID {project_id}",
            path=project.get("path_with_namespace", ""),
            group=group.name,
        )

    return await fan_out(ref, group.project_ids)

def _require_every_project(stage: EnvironmentStage, refs: List[ProjectRef], failures: Dict[int, GitLabError]):
    """A project whose pipelines could not be read blocks the promotion of its module."""
    unreadable = [ref for ref in refs if ref.id in failures]
    if unreadable:
        names = [ref.name for ref in unreadable]
        details = "; ".join(f"{ref.name}: {failures[ref.id].detail}" for ref in unreadable)
        raise PromotionBlockedError(
            stage.value,
            names,
            f"Could not read pipelines of {', '.join(names)}, refusing to promote {stage.value} ({details})",
        )

@router.get("/overview", response_model=OverviewResponse)
async def overview(
    group_id: Optional[int] = None,
    branch: Optional[str] = None,
    monitor: PipelineMonitor = Depends(get_monitor),
    store: GroupStore = Depends(get_group_store),
):
    """Pipelines bucketed by date, module and branch, with gate state per stage."""
    group_name = None
    if group_id is not None:
        group_name = (await _require_group(store, group_id)).name

    await monitor.ensure_ready()
    return OverviewResponse(
        refreshed_at=monitor.refreshed_at,
        buckets=monitor.overview(group_name, branch or None),
    )

@router.post("/{group_id}/deploy", response_model=DeploymentOutcome)
async def deploy_module(
    group_id: int,
    request: DeployRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Trigger a pipeline for the branch on every project of the module."""
    try:
        return await orchestrator.bulk_trigger(
            group_id,
            request.branch,
            variables=request.variables,
            environments=request.environments,
            skip_active=request.skip_active,
        )
    except (ValidationFailedError, BranchPreconditionError, OperationInProgressError) as e:
        raise http_error(e)

@router.post("/{group_id}/release", response_model=ReleaseOutcome)
async def release_module(
    group_id: int,
    request: ReleaseRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.create_release_branches(group_id, request.release_number, request.ref)
    except (ValidationFailedError, OperationInProgressError) as e:
        raise http_error(e)

@router.post("/{group_id}/promote", response_model=PromotionOutcome)
async def promote_module(
    group_id: int,
    request: PromoteRequest,
    gateway: GitLabClient = Depends(get_gateway),
    store: GroupStore = Depends(get_group_store),
    locks: OperationLocks = Depends(get_locks),
    monitor: PipelineMonitor = Depends(get_monitor),
):
    """
    Play the stage's manual job on every active pipeline of the module's
    branch, once the previous stage has cleared everywhere.
    """
    branch = request.branch.strip()
    if not branch:
        raise HTTPException(status_code=422, detail="Branch is required")

    group = await _require_group(store, group_id)

    try:
        async with locks.hold(group.id, branch):
            refs = await _project_refs(gateway, group)
            fetcher = PipelineSnapshotFetcher(gateway)
            snapshot = await fetcher.fetch_all(refs)
            _require_every_project(request.stage, refs, fetcher.last_failures)

            buckets = bucket_pipelines(snapshot, {ref.id: group.name for ref in refs}, group.name, branch)

            bucket = find_bucket(buckets, group.name, branch, request.date)
            if bucket is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"No pipelines for {group.name} on {branch}",
                )

            coordinator = EnvironmentGateCoordinator(gateway, monitor.poller)
            return await coordinator.promote(bucket.active, request.stage)
    except (PromotionBlockedError, OperationInProgressError) as e:
        raise http_error(e)
