"""
Pipeline snapshot fetcher: pulls recent pipelines for a set of projects and
tags each one with its owning project and group.
"""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from api.src.models.pipeline import PipelineSnapshot, ProjectRef
from api.src.services.fanout import fan_out
from api.src.services.gitlab import GitLabError

logger = logging.getLogger(__name__)

class PipelineSnapshotFetcher:
    def __init__(self, gateway, per_page: Optional[int] = None, fan_out_limit: Optional[int] = None):
        self.gateway = gateway
        self.per_page = per_page
        self.fan_out_limit = fan_out_limit
        self.last_failures: Dict[int, GitLabError] = {}

    async def fetch_project(self, project: ProjectRef) -> List[PipelineSnapshot]:
        """Fetch one project's recent pipelines. Raises GitLabError."""
        raw_pipelines = await self.gateway.list_pipelines(project.id, per_page=self.per_page)

        snapshots = []
        for raw in raw_pipelines:
            try:
                snapshots.append(PipelineSnapshot.model_validate({
                    **raw,
                    "project_id": project.id,
                    "project_name": project.name,
                    "project_path": project.path,
                    "group_name": project.group,
                }))
            except ValidationError as e:
                logger.warning(f"Dropping malformed pipeline {raw.get('id')} of {project.name}: {e}")
        return snapshots

    async def fetch_all(self, projects: List[ProjectRef]) -> List[PipelineSnapshot]:
        """
        Fetch pipelines for every project in parallel.
        A project whose request fails contributes nothing; the failure is
        logged and kept in `last_failures`.
        """
        failures: Dict[int, GitLabError] = {}

        async def fetch(project: ProjectRef) -> List[PipelineSnapshot]:
            try:
                return await self.fetch_project(project)
            except GitLabError as e:
                logger.warning(f"Failed to fetch pipelines for {project.name}: {e.detail}")
                failures[project.id] = e
                return []

        results = await fan_out(fetch, projects, self.fan_out_limit)
        self.last_failures = failures

        if failures:
            logger.info(f"Pipeline snapshot partial: {len(failures)} of {len(projects)} projects failed")

        return [pipeline for batch in results for pipeline in batch]
