"""
Shared pytest fixtures: an in-memory GitLab double, process-local locks and
an in-memory SQLite database.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.src.db.database import Base
from api.src.models import group  # noqa: F401
from api.src.models.pipeline import Job, PipelineSnapshot
from api.src.services.errors import OperationInProgressError
from api.src.services.gitlab import GitLabError

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

NOW = datetime(2024, 5, 14, 12, 0, tzinfo=timezone.utc)

class FakeGitLab:
    """Implements the GitLabClient coroutines the services call, in memory."""

    def __init__(self):
        self.projects: Dict[int, Dict[str, Any]] = {}
        self.branches: Dict[int, List[str]] = {}
        self.pipelines: Dict[int, List[Dict[str, Any]]] = {}
        self.jobs: Dict[int, List[Dict[str, Any]]] = {}
        self.files: Dict[tuple, str] = {}
        self.failures: Dict[tuple, GitLabError] = {}
        self.play_status = "success"
        self.calls: List[tuple] = []
        self.closed = False
        self._ids = itertools.count(9000)

    # Setup helpers

    def add_project(self, project_id: int, name: str, branches=("main",), default_branch="main"):
        self.projects[project_id] = {
            "id": project_id,
            "name": name,
            "path_with_namespace": f"shop/{name.lower()}",
            "default_branch": default_branch,
            "web_url": f"https://gitlab.example.com/shop/{name.lower()}",
        }
        self.branches[project_id] = list(branches)

    def add_pipeline(self, project_id: int, pipeline_id: int, ref: str, status: str, created_at=NOW, jobs=None):
        self.pipelines.setdefault(project_id, []).append({
            "id": pipeline_id,
            "project_id": project_id,
            "ref": ref,
            "status": status,
            "created_at": created_at.isoformat(),
            "web_url": f"https://gitlab.example.com/pipelines/{pipeline_id}",
        })
        if jobs is not None:
            self.jobs[pipeline_id] = [
                {"id": job_id, "name": name, "status": job_status, "stage": "deploy"}
                for job_id, name, job_status in jobs
            ]

    def fail(self, method: str, key: Any, status_code: int = 500, detail: Any = "boom"):
        self.failures[(method, key)] = GitLabError(status_code, detail, "GET", f"/{method}")

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _record(self, method: str, key: Any, *args):
        self.calls.append((method, key, *args))
        if (method, key) in self.failures:
            raise self.failures[(method, key)]

    # Gateway surface

    async def get_user(self):
        self._record("get_user", None)
        return {"id": 1, "username": "deployer"}

    async def list_projects(self, per_page: int = 100, membership: bool = True):
        self._record("list_projects", None)
        return list(self.projects.values())

    async def get_project(self, project_id: int):
        self._record("get_project", project_id)
        if project_id not in self.projects:
            raise GitLabError(404, {"message": "404 Project Not Found"}, "GET", f"/projects/{project_id}")
        return self.projects[project_id]

    async def list_branches(self, project_id: int):
        self._record("list_branches", project_id)
        return [{"name": name} for name in self.branches.get(project_id, [])]

    async def list_branch_names(self, project_id: int):
        self._record("list_branch_names", project_id)
        return list(self.branches.get(project_id, []))

    async def create_branch(self, project_id: int, branch: str, ref: str):
        self._record("create_branch", project_id, branch, ref)
        self.branches.setdefault(project_id, []).append(branch)
        return {"name": branch}

    async def get_raw_file(self, project_id: int, file_path: str, ref: str):
        self._record("get_raw_file", project_id, file_path, ref)
        if (project_id, file_path, ref) not in self.files:
            raise GitLabError(404, {"message": "404 File Not Found"}, "GET", file_path)
        return self.files[(project_id, file_path, ref)]

    async def commit_file(self, project_id: int, file_path: str, branch: str, content: str, commit_message: str):
        self._record("commit_file", project_id, file_path, branch)
        self.files[(project_id, file_path, branch)] = content
        return {"file_path": file_path, "branch": branch}

    async def list_pipelines(self, project_id: int, per_page: Optional[int] = None, ref: Optional[str] = None):
        self._record("list_pipelines", project_id, ref)
        pipelines = self.pipelines.get(project_id, [])
        if ref:
            pipelines = [p for p in pipelines if p["ref"] == ref]
        return [dict(p) for p in pipelines]

    async def get_pipeline(self, project_id: int, pipeline_id: int):
        self._record("get_pipeline", project_id, pipeline_id)
        for pipeline in self.pipelines.get(project_id, []):
            if pipeline["id"] == pipeline_id:
                return dict(pipeline)
        raise GitLabError(404, {"message": "404 Not found"}, "GET", f"/pipelines/{pipeline_id}")

    async def list_pipeline_variables(self, project_id: int, pipeline_id: int):
        self._record("list_pipeline_variables", project_id, pipeline_id)
        return [{"key": "ENVIRONMENT", "value": "QA"}]

    async def trigger_pipeline(self, project_id: int, ref: str, variables=None):
        self._record("trigger_pipeline", project_id, ref, variables)
        pipeline_id = next(self._ids)
        return {
            "id": pipeline_id,
            "ref": ref,
            "status": "created",
            "web_url": f"https://gitlab.example.com/pipelines/{pipeline_id}",
        }

    async def retry_pipeline(self, project_id: int, pipeline_id: int):
        self._record("retry_pipeline", project_id, pipeline_id)
        return {"id": pipeline_id, "status": "pending"}

    async def list_project_jobs(self, project_id: int):
        self._record("list_project_jobs", project_id)
        return [job for jobs in self.jobs.values() for job in jobs]

    async def list_pipeline_jobs(self, project_id: int, pipeline_id: int):
        self._record("list_pipeline_jobs", project_id, pipeline_id)
        if ("list_pipeline_jobs", pipeline_id) in self.failures:
            raise self.failures[("list_pipeline_jobs", pipeline_id)]
        return [dict(job) for job in self.jobs.get(pipeline_id, [])]

    async def play_job(self, project_id: int, job_id: int):
        self._record("play_job", project_id, job_id)
        for jobs in self.jobs.values():
            for job in jobs:
                if job["id"] == job_id:
                    job["status"] = self.play_status
                    return dict(job)
        raise GitLabError(404, {"message": "404 Job Not Found"}, "POST", f"/jobs/{job_id}/play")

    async def list_environments(self, project_id: int):
        self._record("list_environments", project_id)
        return [{"id": 1, "name": "qa", "state": "available"}]

    async def stop_environment(self, project_id: int, environment_id: int):
        self._record("stop_environment", project_id, environment_id)
        return {"id": environment_id, "state": "stopping"}

    async def close(self):
        self.closed = True

class InMemoryLocks:
    """Process-local stand-in for the Redis-backed OperationLocks."""

    def __init__(self):
        self._locks: Dict[tuple, asyncio.Lock] = {}
        self.acquired: List[tuple] = []

    @asynccontextmanager
    async def hold(self, group_id: int, branch: str):
        lock = self._locks.setdefault((group_id, branch), asyncio.Lock())
        if lock.locked():
            raise OperationInProgressError(f"Another operation is running for group {group_id} on {branch}")
        async with lock:
            self.acquired.append((group_id, branch))
            yield

async def no_sleep(_seconds):
    return None

def make_pipeline(pipeline_id: int, project_id: int, ref: str = "develop", status: str = "success",
                  created_at: datetime = NOW, project_name: Optional[str] = None) -> PipelineSnapshot:
    return PipelineSnapshot(
        id=pipeline_id,
        project_id=project_id,
        ref=ref,
        status=status,
        created_at=created_at,
        project_name=project_name,
    )

def make_job(job_id: int, name: str, status: str, pipeline_id: Optional[int] = None) -> Job:
    return Job(id=job_id, name=name, status=status, pipeline_id=pipeline_id)

def hours_ago(hours: int) -> datetime:
    return NOW - timedelta(hours=hours)

@pytest.fixture
def gitlab() -> FakeGitLab:
    return FakeGitLab()

@pytest.fixture
def locks() -> InMemoryLocks:
    return InMemoryLocks()

@pytest_asyncio.fixture(scope="function")
async def db_session():
    """Clean in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()
