import logging
import sys
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.src.config import get_settings
from api.src.db.database import close_db, init_db
from api.src.routes import (
    auth_router,
    groups_router,
    health_router,
    modules_router,
    projects_router,
)
from api.src.services.gitlab import GitLabError
from api.src.services.locks import OperationLocks
from api.src.services.scheduler import MonitorRegistry
from api.src.services.store import load_groups

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting DeployMate API")
    await init_db()
    app.state.redis = redis.from_url(settings.redis_url, decode_responses=True)
    app.state.locks = OperationLocks(app.state.redis)
    app.state.monitors = MonitorRegistry(load_groups)
    app.state.monitors.start()
    yield
    # Shutdown
    logger.info("Shutting down DeployMate API")
    await app.state.monitors.stop_all()
    await app.state.redis.aclose()
    await close_db()

app = FastAPI(
    title="DeployMate",
    description="Module-wide GitLab deployment dashboard",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(GitLabError)
async def gitlab_exception_handler(request: Request, exc: GitLabError):
    logger.error(f"Upstream error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={
            "detail": exc.detail,
            "upstream_status": exc.status_code,
        },
    )

# Include routers
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(projects_router, prefix="/api")
app.include_router(groups_router, prefix="/api")
app.include_router(modules_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "DeployMate",
        "version": "0.1.0",
        "docs": "/docs"
    }
