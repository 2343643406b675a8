from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional

from api.src.deps import get_gateway, get_monitor
from api.src.models.schemas import ReleaseRequest, TriggerPipelineRequest
from api.src.services.gitlab import GitLabClient, GitLabError
from api.src.services.scheduler import PipelineMonitor

router = APIRouter(prefix="/projects", tags=["projects"])

@router.get("")
async def list_projects(gateway: GitLabClient = Depends(get_gateway)):
    """List projects the caller is a member of."""
    return await gateway.list_projects()

@router.get("/{project_id}")
async def get_project(project_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.get_project(project_id)

@router.get("/{project_id}/branches")
async def list_branches(project_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.list_branches(project_id)

@router.post("/{project_id}/branches/release")
async def create_release_branch(
    project_id: int,
    request: ReleaseRequest,
    gateway: GitLabClient = Depends(get_gateway),
):
    """Create release/<releaseNumber> on one project."""
    release_number = request.release_number.strip()
    if not release_number:
        raise HTTPException(status_code=422, detail="releaseNumber is required")

    ref = (request.ref or "").strip()
    if not ref:
        project = await gateway.get_project(project_id)
        ref = project.get("default_branch") or "main"

    return await gateway.create_branch(project_id, f"release/{release_number}", ref)

@router.get("/{project_id}/pipelines")
async def list_pipelines(project_id: int, gateway: GitLabClient = Depends(get_gateway)):
    """Recent pipelines, each with the variables it was started with."""
    pipelines = await gateway.list_pipelines(project_id)

    for pipeline in pipelines:
        try:
            pipeline["variables"] = await gateway.list_pipeline_variables(project_id, pipeline["id"])
        except GitLabError:
            pipeline["variables"] = []

    return pipelines

@router.get("/{project_id}/pipelines/{pipeline_id}")
async def get_pipeline(project_id: int, pipeline_id: int, gateway: GitLabClient = Depends(get_gateway)):
    pipeline = await gateway.get_pipeline(project_id, pipeline_id)
    try:
        pipeline["variables"] = await gateway.list_pipeline_variables(project_id, pipeline_id)
    except GitLabError:
        pipeline["variables"] = []
    return pipeline

@router.post("/{project_id}/pipelines/{pipeline_id}/retry")
async def retry_pipeline(project_id: int, pipeline_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.retry_pipeline(project_id, pipeline_id)

@router.get("/{project_id}/pipelines/{pipeline_id}/jobs")
async def list_pipeline_jobs(project_id: int, pipeline_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.list_pipeline_jobs(project_id, pipeline_id)

@router.get("/{project_id}/jobs")
async def list_jobs(project_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.list_project_jobs(project_id)

@router.post("/{project_id}/jobs/{job_id}/play")
async def play_job(
    project_id: int,
    job_id: int,
    pipeline_id: Optional[int] = None,
    gateway: GitLabClient = Depends(get_gateway),
    monitor: PipelineMonitor = Depends(get_monitor),
):
    """
    Play a manual job. With `pipeline_id` the job is followed in the
    background until it finishes, and the monitor's job cache is updated.
    """
    job = await gateway.play_job(project_id, job_id)
    if pipeline_id is not None:
        monitor.watch_job(project_id, pipeline_id, job_id)
    return job

@router.post("/{project_id}/trigger-pipeline")
async def trigger_pipeline(
    project_id: int,
    request: TriggerPipelineRequest,
    gateway: GitLabClient = Depends(get_gateway),
):
    ref = request.ref.strip()
    if not ref:
        raise HTTPException(status_code=422, detail="ref is required")

    if ref == "main":
        project = await gateway.get_project(project_id)
        ref = project.get("default_branch") or ref

    return await gateway.trigger_pipeline(project_id, ref, request.variables)

@router.get("/{project_id}/environments")
async def list_environments(project_id: int, gateway: GitLabClient = Depends(get_gateway)) -> List[Dict[str, Any]]:
    return await gateway.list_environments(project_id)

@router.post("/{project_id}/environments/{environment_id}/stop")
async def stop_environment(project_id: int, environment_id: int, gateway: GitLabClient = Depends(get_gateway)):
    return await gateway.stop_environment(project_id, environment_id)
