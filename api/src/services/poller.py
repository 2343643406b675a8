"""
Job status poller - keeps per-pipeline job lists fresh and follows played
jobs until they finish.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from api.src.config import get_settings
from api.src.models.pipeline import GATE_PENDING_STATUSES, Job, PipelineSnapshot
from api.src.services.fanout import fan_out
from api.src.services.gitlab import GitLabError

logger = logging.getLogger(__name__)
settings = get_settings()

def parse_jobs(raw_jobs: List[Dict[str, Any]], project_id: int, pipeline_id: int) -> List[Job]:
    jobs = []
    for raw in raw_jobs:
        try:
            jobs.append(Job.model_validate({
                **raw,
                "project_id": project_id,
                "pipeline_id": pipeline_id,
            }))
        except ValidationError as e:
            logger.warning(f"Dropping malformed job {raw.get('id')} of pipeline {pipeline_id}: {e}")
    return jobs

class JobCache:
    """Latest known job list per pipeline id, with the pipeline status it was fetched at."""

    def __init__(self):
        self._jobs: Dict[int, List[Job]] = {}
        self._statuses: Dict[int, str] = {}

    def __contains__(self, pipeline_id: int) -> bool:
        return pipeline_id in self._jobs

    def get(self, pipeline_id: int) -> Optional[List[Job]]:
        return self._jobs.get(pipeline_id)

    def status_of(self, pipeline_id: int) -> Optional[str]:
        return self._statuses.get(pipeline_id)

    def set(self, pipeline_id: int, jobs: List[Job], status: Optional[str] = None):
        self._jobs[pipeline_id] = list(jobs)
        if status is not None:
            self._statuses[pipeline_id] = status

    def update_job(self, pipeline_id: int, job: Job):
        jobs = self._jobs.get(pipeline_id, [])
        replaced = [job if j.id == job.id else j for j in jobs]
        if not any(j.id == job.id for j in jobs):
            replaced.append(job)
        self._jobs[pipeline_id] = replaced

    def prune(self, keep: Iterable[int]) -> List[int]:
        """Drop every pipeline not in `keep`; return the dropped ids."""
        keep = set(keep)
        dropped = [pid for pid in self._jobs if pid not in keep]
        for pid in dropped:
            del self._jobs[pid]
            self._statuses.pop(pid, None)
        return dropped

    def snapshot(self) -> Dict[int, List[Job]]:
        return {pid: list(jobs) for pid, jobs in self._jobs.items()}

class JobStatusPoller:
    def __init__(
        self,
        gateway,
        cache: Optional[JobCache] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        fan_out_limit: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.gateway = gateway
        self.cache = cache if cache is not None else JobCache()
        self.max_attempts = settings.job_poll_max_attempts if max_attempts is None else max_attempts
        self.interval = settings.job_poll_interval_seconds if interval is None else interval
        self.fan_out_limit = fan_out_limit
        self._sleep = sleep

    async def fetch_jobs(self, project_id: int, pipeline_id: int) -> List[Job]:
        """Fetch a pipeline's jobs. Raises GitLabError."""
        raw_jobs = await self.gateway.list_pipeline_jobs(project_id, pipeline_id)
        return parse_jobs(raw_jobs, project_id, pipeline_id)

    async def refresh(
        self,
        project_id: int,
        pipeline_id: int,
        status: Optional[str] = None,
    ) -> Optional[List[Job]]:
        """
        Overwrite the cached job list of one pipeline.
        On failure the previous cache entry is kept and None is returned.
        """
        try:
            jobs = await self.fetch_jobs(project_id, pipeline_id)
        except GitLabError as e:
            logger.warning(f"Failed to refresh jobs for pipeline {pipeline_id}: {e.detail}")
            return None

        self.cache.set(pipeline_id, jobs, status)
        return jobs

    async def refresh_many(self, pipelines: Iterable[PipelineSnapshot]):
        await fan_out(
            lambda p: self.refresh(p.project_id, p.id, p.status),
            list(pipelines),
            self.fan_out_limit,
        )

    async def refresh_manual_or_waiting(self, active: Iterable[PipelineSnapshot]):
        """Refresh jobs of every active pipeline blocked on a manual job or resource."""
        pending = [p for p in active if p.status in GATE_PENDING_STATUSES]
        if pending:
            logger.debug(f"Refreshing jobs for {len(pending)} gate-pending pipelines")
            await self.refresh_many(pending)

    def is_stale(self, pipeline: PipelineSnapshot) -> bool:
        """
        A cached job list is stale when it was never fetched, when the pipeline
        status moved on since it was fetched, or while the pipeline is still
        running. Gate-pending pipelines are left to refresh_manual_or_waiting.
        """
        if pipeline.id not in self.cache:
            return True
        if self.cache.status_of(pipeline.id) != pipeline.status:
            return True
        return not pipeline.is_terminal and pipeline.status not in GATE_PENDING_STATUSES

    async def refresh_stale(self, active: Iterable[PipelineSnapshot]):
        """Fetch jobs for active pipelines whose cached list is missing or out of date."""
        stale = [p for p in active if self.is_stale(p)]
        if stale:
            logger.debug(f"Refreshing jobs for {len(stale)} stale pipelines")
            await self.refresh_many(stale)

    async def poll_until_terminal(
        self,
        project_id: int,
        job_id: int,
        pipeline_id: int,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> Optional[Job]:
        """
        Poll a pipeline's jobs until `job_id` reaches a terminal status.

        Giving up after `max_attempts` is not an error: the job is returned
        in whatever state the final refresh saw (None if it was never seen),
        and the caller should treat it as unknown. A fetch that fails counts
        as an attempt and is retried on the next tick. The pipeline's job
        list is always refreshed once more before returning.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        delay = self.interval if interval is None else interval
        job: Optional[Job] = None

        for attempt in range(attempts):
            try:
                jobs = await self.fetch_jobs(project_id, pipeline_id)
                job = next((j for j in jobs if j.id == job_id), job)
                if job is not None and job.is_terminal:
                    self.cache.update_job(pipeline_id, job)
                    break
            except GitLabError as e:
                logger.debug(f"Poll attempt {attempt + 1} for job {job_id} failed: {e.detail}")

            if attempt < attempts - 1:
                await self._sleep(delay)
        else:
            logger.info(
                f"Job {job_id} of pipeline {pipeline_id} not finished after {attempts} attempts"
            )

        jobs = await self.refresh(project_id, pipeline_id)
        if jobs is not None:
            job = next((j for j in jobs if j.id == job_id), job)
        return job
