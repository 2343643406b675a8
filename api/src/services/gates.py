"""
Environment gate coordinator.

A module moves through QA -> Staging -> Production together: a stage may only
be played once the previous stage has succeeded on every active pipeline of
the module, and no earlier stage is still waiting on a manual action anywhere.
"""

import logging
from typing import Dict, List, Optional, Tuple, Union

from api.src.models.pipeline import EnvironmentStage, Job, PipelineSnapshot
from api.src.models.schemas import GateState, JobOutcome, PromotionOutcome
from api.src.services.errors import PromotionBlockedError
from api.src.services.fanout import fan_out
from api.src.services.gitlab import GitLabError
from api.src.services.poller import JobStatusPoller

logger = logging.getLogger(__name__)

JobsByPipeline = Dict[int, List[Job]]

def stage_jobs(jobs: List[Job], stage: EnvironmentStage) -> List[Job]:
    return [job for job in jobs if job.environment_stage == stage]

def stage_cleared(jobs: List[Job], stage: EnvironmentStage) -> bool:
    """At least one successful job for the stage and none left in manual."""
    statuses = [job.status for job in stage_jobs(jobs, stage)]
    return "success" in statuses and "manual" not in statuses

def _blocking_projects(
    stage: EnvironmentStage,
    active: List[PipelineSnapshot],
    jobs_by_pipeline: JobsByPipeline,
) -> List[str]:
    predecessors = stage.predecessors
    if not predecessors:
        return []

    previous = predecessors[-1]
    blocked: List[str] = []
    for pipeline in active:
        jobs = jobs_by_pipeline.get(pipeline.id, [])
        outstanding = any(
            job.status == "manual"
            for earlier in predecessors
            for job in stage_jobs(jobs, earlier)
        )
        if outstanding or not stage_cleared(jobs, previous):
            if pipeline.display_name not in blocked:
                blocked.append(pipeline.display_name)
    return blocked

def evaluate_gate(
    stage: EnvironmentStage,
    active: List[PipelineSnapshot],
    jobs_by_pipeline: JobsByPipeline,
) -> GateState:
    manual = 0
    succeeded = 0
    for pipeline in active:
        for job in stage_jobs(jobs_by_pipeline.get(pipeline.id, []), stage):
            if job.status == "manual":
                manual += 1
            elif job.status == "success":
                succeeded += 1

    blocked_by = _blocking_projects(stage, active, jobs_by_pipeline)
    cleared = bool(active) and all(
        stage_cleared(jobs_by_pipeline.get(p.id, []), stage) for p in active
    )

    return GateState(
        stage=stage,
        job_name=stage.job_name,
        manual=manual,
        succeeded=succeeded,
        cleared=cleared,
        playable=manual > 0 and not blocked_by,
        blocked_by=blocked_by,
    )

def evaluate_gates(active: List[PipelineSnapshot], jobs_by_pipeline: JobsByPipeline) -> List[GateState]:
    return [evaluate_gate(stage, active, jobs_by_pipeline) for stage in EnvironmentStage]

class EnvironmentGateCoordinator:
    def __init__(self, gateway, poller: JobStatusPoller, fan_out_limit: Optional[int] = None):
        self.gateway = gateway
        self.poller = poller
        self.fan_out_limit = fan_out_limit

    def _jobs_for(self, active: List[PipelineSnapshot]) -> JobsByPipeline:
        return {p.id: self.poller.cache.get(p.id) or [] for p in active}

    async def promote(
        self,
        active: List[PipelineSnapshot],
        stage: Union[EnvironmentStage, str],
    ) -> PromotionOutcome:
        """
        Play the manual `stage` job on every active pipeline, wait for each to
        finish, then reconcile the touched pipelines' job lists.

        Raises PromotionBlockedError when an earlier stage is not cleared on
        every active pipeline. A failed play leaves that job as it was and is
        reported in the outcome; nothing is retried.
        """
        if not isinstance(stage, EnvironmentStage):
            stage = EnvironmentStage.parse(stage)

        # Gate on fresh job lists, never on cached ones
        await self.poller.refresh_many(active)
        jobs_by_pipeline = self._jobs_for(active)

        gate = evaluate_gate(stage, active, jobs_by_pipeline)
        if gate.blocked_by:
            previous = stage.predecessors[-1]
            raise PromotionBlockedError(
                stage.value,
                gate.blocked_by,
                f"{previous.value} must succeed on every project before {stage.value}; "
                f"not cleared on: {', '.join(gate.blocked_by)}",
            )

        targets: List[Tuple[PipelineSnapshot, Job]] = [
            (pipeline, job)
            for pipeline in active
            for job in stage_jobs(jobs_by_pipeline[pipeline.id], stage)
            if job.status == "manual"
        ]
        outcome = PromotionOutcome(stage=stage, job_name=stage.job_name)
        if not targets:
            logger.info(f"No manual {stage.job_name} jobs to play")
            return outcome

        async def play(target: Tuple[PipelineSnapshot, Job]) -> JobOutcome:
            pipeline, job = target
            result = JobOutcome(
                project_id=pipeline.project_id,
                project_name=pipeline.display_name,
                pipeline_id=pipeline.id,
                job_id=job.id,
                played=False,
            )
            try:
                await self.gateway.play_job(pipeline.project_id, job.id)
                result.played = True
            except GitLabError as e:
                logger.error(f"Failed to play {job.name} ({job.id}) on {pipeline.display_name}: {e.detail}")
                result.error = e.detail
            return result

        results = await fan_out(play, targets, self.fan_out_limit)
        logger.info(
            f"Played {sum(r.played for r in results)} of {len(results)} {stage.job_name} jobs"
        )

        async def follow(result: JobOutcome):
            job = await self.poller.poll_until_terminal(
                result.project_id, result.job_id, result.pipeline_id
            )
            if job is not None and job.is_terminal:
                result.final_status = job.status

        await fan_out(follow, [r for r in results if r.played], self.fan_out_limit)

        touched = {pipeline.id: pipeline for pipeline, _ in targets}
        await self.poller.refresh_many(touched.values())

        for result in results:
            for job in self.poller.cache.get(result.pipeline_id) or []:
                if job.id == result.job_id and result.played:
                    result.final_status = job.status if job.is_terminal else None

        outcome.jobs = results
        return outcome
