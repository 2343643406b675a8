import logging
import secrets
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from api.src.config import get_settings
from api.src.deps import Credentials, get_credentials, get_gateway, get_monitors
from api.src.services.gitlab import GitLabClient, GitLabError
from api.src.services.scheduler import MonitorRegistry
from api.src.services.sessions import (
    consume_oauth_state,
    create_session,
    delete_session,
    get_session,
    save_oauth_state,
)

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(tags=["auth"])

@router.get("/auth/gitlab")
async def login():
    """Start the GitLab OAuth flow."""
    state = secrets.token_urlsafe(24)
    await save_oauth_state(state)

    query = urlencode({
        "client_id": settings.gitlab_client_id,
        "redirect_uri": settings.gitlab_redirect_uri,
        "response_type": "code",
        "state": state,
        "scope": settings.gitlab_scopes,
    })
    return RedirectResponse(f"{settings.gitlab_base_url.rstrip('/')}/oauth/authorize?{query}")

@router.get("/auth/gitlab/callback")
async def callback(code: str, state: str):
    if not await consume_oauth_state(state):
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                f"{settings.gitlab_base_url.rstrip('/')}/oauth/token",
                data={
                    "client_id": settings.gitlab_client_id,
                    "client_secret": settings.gitlab_client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": settings.gitlab_redirect_uri,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"OAuth token exchange failed: {e}")
            raise HTTPException(status_code=502, detail="Could not reach GitLab")

    if response.is_error:
        logger.error(f"OAuth token exchange rejected ({response.status_code}): {response.text}")
        raise HTTPException(status_code=400, detail="Failed to exchange authorization code")

    tokens = response.json()
    access_token = tokens["access_token"]

    async with GitLabClient(access_token) as gateway:
        user = await gateway.get_user()

    session_id = await create_session(user, access_token, tokens.get("refresh_token", ""))
    logger.info(f"User {user.get('username')} logged in")

    redirect = RedirectResponse(settings.frontend_url)
    redirect.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
    )
    return redirect

@router.post("/auth/logout")
async def logout(request: Request, monitors: MonitorRegistry = Depends(get_monitors)):
    session_id = request.cookies.get(settings.session_cookie_name)
    if session_id:
        await delete_session(session_id)
        await monitors.stop(f"session:{session_id}")

    response = RedirectResponse(settings.frontend_url, status_code=303)
    response.delete_cookie(settings.session_cookie_name)
    return response

@router.get("/auth/status")
async def auth_status(request: Request):
    session_id = request.cookies.get(settings.session_cookie_name)
    session = await get_session(session_id) if session_id else None
    if not session:
        return {"authenticated": False, "user": None}

    return {
        "authenticated": True,
        "user": {
            "id": session.get("user_id"),
            "username": session.get("username"),
            "email": session.get("email"),
        },
    }

@router.get("/api/test-gitlab")
async def test_gitlab(
    credentials: Credentials = Depends(get_credentials),
    gateway: GitLabClient = Depends(get_gateway),
):
    """Check that the caller's token can reach GitLab and read projects."""
    try:
        user = await gateway.get_user()
        projects = await gateway.list_projects(per_page=1)
    except GitLabError as e:
        return {
            "ok": False,
            "status_code": e.status_code,
            "insufficient_scope": "insufficient_scope" in str(e.detail),
            "detail": e.detail,
        }

    return {
        "ok": True,
        "user": user.get("username"),
        "via": credentials.key.split(":", 1)[0],
        "projects_visible": len(projects) > 0,
    }
