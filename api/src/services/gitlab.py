"""
GitLab service for the REST v4 endpoints the dashboard relies on.
"""

import logging
from typing import Optional, Dict, Any, List
from urllib.parse import quote

import httpx

from api.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

CI_CONFIG_PATH = ".gitlab-ci.yml"

class GitLabError(Exception):
    """Raised when a GitLab request fails or answers with an error status."""

    def __init__(self, status_code: Optional[int], detail: Any, method: str = "", path: str = ""):
        self.status_code = status_code
        self.detail = detail
        self.method = method
        self.path = path
        super().__init__(f"GitLab {method} {path} failed ({status_code}): {detail}")

def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text

class GitLabClient:
    """Thin async client over GitLab's REST API, authenticated with a bearer token."""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.gitlab_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v4",
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitLabError(None, str(e), method, path) from e

        if response.is_error:
            raise GitLabError(response.status_code, _error_detail(response), method, path)
        return response

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("GET", path, params=params)
        return response.json()

    async def _get_all_pages(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Follow GitLab's X-Next-Page header until the last page."""
        params = dict(params or {})
        page = "1"
        items: List[Any] = []

        while page:
            params["page"] = page
            response = await self._request("GET", path, params=params)
            batch = response.json()
            if not batch:
                break
            items.extend(batch)
            page = response.headers.get("X-Next-Page", "").strip()

        return items

    # Users and projects

    async def get_user(self) -> Dict[str, Any]:
        return await self._get("/user")

    async def list_projects(self, per_page: int = 100, membership: bool = True) -> List[Dict[str, Any]]:
        params = {"per_page": per_page}
        if membership:
            params["membership"] = "true"
        return await self._get("/projects", params=params)

    async def get_project(self, project_id: int) -> Dict[str, Any]:
        return await self._get(f"/projects/{project_id}")

    # Branches and files

    async def list_branches(self, project_id: int) -> List[Dict[str, Any]]:
        return await self._get_all_pages(
            f"/projects/{project_id}/repository/branches",
            params={"per_page": settings.branches_per_page},
        )

    async def list_branch_names(self, project_id: int) -> List[str]:
        return [branch["name"] for branch in await self.list_branches(project_id)]

    async def create_branch(self, project_id: int, branch: str, ref: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/projects/{project_id}/repository/branches",
            params={"branch": branch, "ref": ref},
        )
        return response.json()

    async def get_raw_file(self, project_id: int, file_path: str, ref: str) -> str:
        response = await self._request(
            "GET",
            f"/projects/{project_id}/repository/files/{quote(file_path, safe='')}/raw",
            params={"ref": ref},
        )
        return response.text

    async def file_exists(self, project_id: int, file_path: str, ref: str) -> bool:
        try:
            await self._request(
                "HEAD",
                f"/projects/{project_id}/repository/files/{quote(file_path, safe='')}",
                params={"ref": ref},
            )
        except GitLabError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def commit_file(
        self,
        project_id: int,
        file_path: str,
        branch: str,
        content: str,
        commit_message: str,
    ) -> Dict[str, Any]:
        """Create the file on the branch, or update it when it already exists."""
        method = "PUT" if await self.file_exists(project_id, file_path, branch) else "POST"
        response = await self._request(
            method,
            f"/projects/{project_id}/repository/files/{quote(file_path, safe='')}",
            json={
                "branch": branch,
                "content": content,
                "commit_message": commit_message,
            },
        )
        return response.json()

    # Pipelines

    async def list_pipelines(
        self,
        project_id: int,
        per_page: Optional[int] = None,
        ref: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": per_page or settings.pipelines_per_page}
        if ref:
            params["ref"] = ref
        return await self._get(f"/projects/{project_id}/pipelines", params=params)

    async def get_pipeline(self, project_id: int, pipeline_id: int) -> Dict[str, Any]:
        return await self._get(f"/projects/{project_id}/pipelines/{pipeline_id}")

    async def list_pipeline_variables(self, project_id: int, pipeline_id: int) -> List[Dict[str, Any]]:
        return await self._get(f"/projects/{project_id}/pipelines/{pipeline_id}/variables")

    async def trigger_pipeline(
        self,
        project_id: int,
        ref: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/projects/{project_id}/pipeline",
            json={
                "ref": ref,
                "variables": [
                    {"key": key, "value": str(value)}
                    for key, value in (variables or {}).items()
                ],
            },
        )
        return response.json()

    async def retry_pipeline(self, project_id: int, pipeline_id: int) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/projects/{project_id}/pipelines/{pipeline_id}/retry"
        )
        return response.json()

    # Jobs

    async def list_project_jobs(self, project_id: int) -> List[Dict[str, Any]]:
        return await self._get(
            f"/projects/{project_id}/jobs",
            params={"per_page": settings.jobs_per_page},
        )

    async def list_pipeline_jobs(self, project_id: int, pipeline_id: int) -> List[Dict[str, Any]]:
        return await self._get(
            f"/projects/{project_id}/pipelines/{pipeline_id}/jobs",
            params={"per_page": settings.jobs_per_page},
        )

    async def play_job(self, project_id: int, job_id: int) -> Dict[str, Any]:
        response = await self._request("POST", f"/projects/{project_id}/jobs/{job_id}/play")
        return response.json()

    # Environments

    async def list_environments(self, project_id: int) -> List[Dict[str, Any]]:
        return await self._get(f"/projects/{project_id}/environments")

    async def stop_environment(self, project_id: int, environment_id: int) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/projects/{project_id}/environments/{environment_id}/stop"
        )
        return response.json()
