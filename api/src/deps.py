"""
Shared dependencies for the API routes.
"""

import hashlib
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.services.errors import (
    BranchPreconditionError,
    GroupRevisionConflictError,
    OperationInProgressError,
    PromotionBlockedError,
    ValidationFailedError,
)
from api.src.services.gitlab import GitLabClient
from api.src.services.locks import OperationLocks
from api.src.services.orchestrator import DeploymentOrchestrator
from api.src.services.scheduler import MonitorRegistry, PipelineMonitor
from api.src.services.sessions import get_session
from api.src.services.store import DeploymentHistory, GroupStore

settings = get_settings()

bearer = HTTPBearer(auto_error=False)

class Credentials(BaseModel):
    access_token: str
    key: str  # Identifies the login for per-session state
    username: Optional[str] = None

async def get_credentials(
    request: Request,
    authorization: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Credentials:
    """Bearer header first, then the session cookie, then the service token."""
    if authorization and authorization.credentials:
        digest = hashlib.sha256(authorization.credentials.encode()).hexdigest()[:16]
        return Credentials(access_token=authorization.credentials, key=f"token:{digest}")

    session_id = request.cookies.get(settings.session_cookie_name)
    if session_id:
        session = await get_session(session_id)
        if session and session.get("access_token"):
            return Credentials(
                access_token=session["access_token"],
                key=f"session:{session_id}",
                username=session.get("username"),
            )

    if settings.gitlab_token:
        return Credentials(access_token=settings.gitlab_token, key="service")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
    )

async def get_gateway(
    credentials: Credentials = Depends(get_credentials),
) -> AsyncGenerator[GitLabClient, None]:
    async with GitLabClient(credentials.access_token) as client:
        yield client

def get_monitors(request: Request) -> MonitorRegistry:
    return request.app.state.monitors

def get_locks(request: Request) -> OperationLocks:
    return request.app.state.locks

async def get_monitor(
    credentials: Credentials = Depends(get_credentials),
    monitors: MonitorRegistry = Depends(get_monitors),
) -> PipelineMonitor:
    return monitors.ensure(credentials.key, credentials.access_token)

def get_group_store(db: AsyncSession = Depends(get_db)) -> GroupStore:
    return GroupStore(db)

def get_history(db: AsyncSession = Depends(get_db)) -> DeploymentHistory:
    return DeploymentHistory(db)

def get_orchestrator(
    gateway: GitLabClient = Depends(get_gateway),
    groups: GroupStore = Depends(get_group_store),
    history: DeploymentHistory = Depends(get_history),
    locks: OperationLocks = Depends(get_locks),
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(gateway, groups, history, locks)

def http_error(error: Exception) -> HTTPException:
    """Translate a domain error into the HTTP answer the routes return."""
    if isinstance(error, BranchPreconditionError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(error),
                "missing": error.missing,
                "unreachable": error.unreachable,
            },
        )
    if isinstance(error, ValidationFailedError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, PromotionBlockedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "stage": error.stage, "blocked_by": error.blocked_by},
        )
    if isinstance(error, OperationInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, GroupRevisionConflictError):
        return HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail={"message": str(error), "revision": error.current},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
