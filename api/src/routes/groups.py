from fastapi import APIRouter, Depends, Header, HTTPException, Response
from typing import List, Optional

from api.src.deps import get_group_store, get_history, http_error
from api.src.models.pipeline import default_environment_status
from api.src.models.schemas import DeploymentRecordIn, DeploymentRecordOut, GroupIn, GroupOut
from api.src.services.errors import GroupRevisionConflictError, ValidationFailedError
from api.src.services.store import DeploymentHistory, GroupStore

router = APIRouter(tags=["groups"])

def _etag(revision: int) -> str:
    return f'"{revision}"'

def _parse_if_match(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "*":
        return None
    raw = value.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    try:
        return int(raw.strip('"'))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Malformed If-Match header: {value}")

@router.get("/groups", response_model=List[GroupOut], response_model_by_alias=True)
async def list_groups(response: Response, store: GroupStore = Depends(get_group_store)):
    """The whole group document; the ETag carries its revision."""
    response.headers["ETag"] = _etag(await store.revision())
    return await store.list_groups()

@router.post("/groups", response_model=List[GroupOut], response_model_by_alias=True)
async def save_groups(
    groups: List[GroupIn],
    response: Response,
    if_match: Optional[str] = Header(default=None),
    store: GroupStore = Depends(get_group_store),
):
    """Replace the whole group document."""
    expected = _parse_if_match(if_match)
    try:
        revision = await store.replace_all(groups, expected_revision=expected)
    except (ValidationFailedError, GroupRevisionConflictError) as e:
        raise http_error(e)

    response.headers["ETag"] = _etag(revision)
    return await store.list_groups()

@router.get("/groups/{group_id}", response_model=GroupOut, response_model_by_alias=True)
async def get_group(group_id: int, store: GroupStore = Depends(get_group_store)):
    group = await store.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return group

@router.get("/bulk-deployments", response_model=List[DeploymentRecordOut])
async def list_bulk_deployments(
    limit: Optional[int] = None,
    history: DeploymentHistory = Depends(get_history),
):
    """Deployment history, newest first."""
    return await history.list_records(limit)

@router.post("/bulk-deployments", response_model=DeploymentRecordOut, status_code=201)
async def create_bulk_deployment(
    record: DeploymentRecordIn,
    history: DeploymentHistory = Depends(get_history),
):
    if not record.module.strip() or not record.branch.strip():
        raise HTTPException(status_code=422, detail="module and branch are required")

    return await history.append(
        record.module.strip(),
        record.branch.strip(),
        record.started,
        record.environments or default_environment_status(),
    )
