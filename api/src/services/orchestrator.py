"""
Deployment orchestrator - fans pipeline triggers and release branches out
across every project of a module (group).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from api.src.models.pipeline import PipelineSnapshot, default_environment_status
from api.src.models.schemas import DeploymentOutcome, GroupOut, ProjectOutcome, ReleaseOutcome
from api.src.services.aggregation import latest_per_project
from api.src.services.ci_config import CIConfigError, environment_jobs, parse_ci_config
from api.src.services.errors import BranchPreconditionError, ValidationFailedError
from api.src.services.fanout import fan_out
from api.src.services.gitlab import CI_CONFIG_PATH, GitLabError

logger = logging.getLogger(__name__)

RELEASE_PREFIX = "release/"

def _summarize(outcomes: List[ProjectOutcome], done: str) -> Tuple[str, List[str], List[str]]:
    succeeded = [o.project_name for o in outcomes if o.status == done]
    failed = [o.project_name for o in outcomes if o.status == "failed"]
    if succeeded and failed:
        status = "partial"
    elif succeeded:
        status = "success"
    elif failed:
        status = "failed"
    else:
        status = "skipped"
    return status, succeeded, failed

class DeploymentOrchestrator:
    def __init__(self, gateway, groups, history, locks, fan_out_limit: Optional[int] = None):
        self.gateway = gateway
        self.groups = groups
        self.history = history
        self.locks = locks
        self.fan_out_limit = fan_out_limit

    async def _resolve_group(self, group_id: int) -> GroupOut:
        group = await self.groups.get_group(group_id)
        if group is None:
            raise ValidationFailedError(f"Group {group_id} not found")
        if not group.project_ids:
            raise ValidationFailedError(f"Group '{group.name}' has no projects")
        return group

    async def _project(self, project_id: int) -> Dict[str, Any]:
        """Project details, or a stub named by id when they cannot be fetched."""
        try:
            return await self.gateway.get_project(project_id)
        except GitLabError as e:
            logger.warning(f"Failed to fetch project {project_id}: {e.detail}")
            return {"id": project_id, "name": f"ID {project_id}"}

    async def check_branch(self, group: GroupOut, branch: str) -> Dict[int, str]:
        """
        Verify `branch` exists on every project of the group.
        Returns project names by id; raises BranchPreconditionError naming
        every project that lacks the branch or whose branches could not be listed.
        """
        async def check(project_id: int):
            project = await self._project(project_id)
            try:
                names = await self.gateway.list_branch_names(project_id)
            except GitLabError as e:
                return project_id, project["name"], None, e.detail
            return project_id, project["name"], branch in names, None

        results = await fan_out(check, group.project_ids, self.fan_out_limit)

        missing = [name for _, name, found, _ in results if found is False]
        unreachable = {name: detail for _, name, found, detail in results if found is None}
        if missing or unreachable:
            error = BranchPreconditionError(branch, missing, unreachable)
            logger.warning(f"Precondition failed for {group.name}: {error}")
            raise error

        return {project_id: name for project_id, name, _, _ in results}

    async def _active_pipeline(self, project_id: int, branch: str) -> Optional[PipelineSnapshot]:
        try:
            raw_pipelines = await self.gateway.list_pipelines(project_id, ref=branch)
        except GitLabError as e:
            logger.warning(f"Could not check running pipelines of {project_id}: {e.detail}")
            return None

        snapshots = [
            PipelineSnapshot.model_validate({**raw, "project_id": project_id})
            for raw in raw_pipelines
            if raw.get("ref") == branch
        ]
        latest = latest_per_project(snapshots)
        if latest and not latest[0].is_terminal:
            return latest[0]
        return None

    async def _trigger(
        self,
        project_id: int,
        project_name: str,
        branch: str,
        variables: Optional[Dict[str, Any]],
        skip_active: bool,
    ) -> ProjectOutcome:
        if skip_active:
            running = await self._active_pipeline(project_id, branch)
            if running is not None:
                logger.info(f"Skipping {project_name}: pipeline {running.id} is {running.status}")
                return ProjectOutcome(
                    project_id=project_id,
                    project_name=project_name,
                    status="skipped",
                    pipeline_id=running.id,
                    web_url=running.web_url,
                )

        try:
            pipeline = await self.gateway.trigger_pipeline(project_id, branch, variables)
        except GitLabError as e:
            logger.error(f"Failed to trigger pipeline for {project_name}: {e.detail}")
            return ProjectOutcome(
                project_id=project_id,
                project_name=project_name,
                status="failed",
                error=e.detail,
            )

        logger.info(f"Triggered pipeline {pipeline.get('id')} for {project_name} on {branch}")
        return ProjectOutcome(
            project_id=project_id,
            project_name=project_name,
            status="triggered",
            pipeline_id=pipeline.get("id"),
            web_url=pipeline.get("web_url"),
        )

    async def bulk_trigger(
        self,
        group_id: int,
        branch: str,
        variables: Optional[Dict[str, Any]] = None,
        environments: Optional[Dict[str, str]] = None,
        skip_active: bool = True,
    ) -> DeploymentOutcome:
        """
        Trigger a pipeline for `branch` on every project of the group.

        Nothing is triggered unless the branch exists on every project.
        Per-project trigger results are all collected; a deployment record
        is appended when at least one pipeline was triggered.
        """
        branch = (branch or "").strip()
        if not branch:
            raise ValidationFailedError("Branch is required")

        group = await self._resolve_group(group_id)
        started = datetime.now(timezone.utc)

        async with self.locks.hold(group.id, branch):
            names = await self.check_branch(group, branch)

            outcomes = await fan_out(
                lambda pid: self._trigger(pid, names[pid], branch, variables, skip_active),
                group.project_ids,
                self.fan_out_limit,
            )

            status, triggered, failed = _summarize(outcomes, "triggered")
            record_id = None
            if triggered:
                record = await self.history.append(
                    group.name,
                    branch,
                    started,
                    environments or default_environment_status(),
                )
                record_id = record.id

        if status == "success":
            message = f"Module deployment triggered for {group.name} on {branch}"
        elif status == "partial":
            message = (
                f"Triggered {len(triggered)} of {len(outcomes)} projects; "
                f"failed: {', '.join(failed)}"
            )
        elif status == "failed":
            message = f"Failed to trigger pipelines for: {', '.join(failed)}"
        else:
            message = f"Pipelines already running on {branch} for every project of {group.name}"

        logger.info(f"Bulk trigger {group.name}@{branch}: {status}")
        return DeploymentOutcome(
            group=group.name,
            branch=branch,
            status=status,
            message=message,
            projects=outcomes,
            record_id=record_id,
        )

    async def _release(self, project_id: int, branch: str, source_ref: Optional[str]) -> ProjectOutcome:
        project = await self._project(project_id)
        name = project["name"]
        default_branch = project.get("default_branch")
        source = source_ref or default_branch
        outcome = ProjectOutcome(project_id=project_id, project_name=name, status="failed")

        if not source:
            outcome.error = "Project has no default branch and no source ref was given"
            return outcome

        try:
            await self.gateway.create_branch(project_id, branch, source)
        except GitLabError as e:
            logger.error(f"Failed to create {branch} on {name}: {e.detail}")
            outcome.error = e.detail
            return outcome

        outcome.status = "created"
        web_url = project.get("web_url")
        if web_url:
            outcome.web_url = f"{web_url}/-/tree/{quote(branch, safe='')}"

        if not default_branch:
            return outcome

        # The release branch runs the default branch's CI definition
        try:
            content = await self.gateway.get_raw_file(project_id, CI_CONFIG_PATH, default_branch)
            config = parse_ci_config(content)
            outcome.stages = [job["environment"] for job in environment_jobs(config)]
            if source != default_branch:
                await self.gateway.commit_file(
                    project_id,
                    CI_CONFIG_PATH,
                    branch,
                    content,
                    f"Add {CI_CONFIG_PATH} to release branch",
                )
        except (GitLabError, CIConfigError) as e:
            logger.error(f"Error copying {CI_CONFIG_PATH} to {branch} on {name}: {e}")
            outcome.warnings.append(f"{CI_CONFIG_PATH} not copied: {e}")

        return outcome

    async def create_release_branches(
        self,
        group_id: int,
        release_number: str,
        source_ref: Optional[str] = None,
    ) -> ReleaseOutcome:
        """Create release/<release_number> on every project of the group."""
        release_number = (release_number or "").strip()
        if not release_number:
            raise ValidationFailedError("releaseNumber is required")
        if release_number.startswith(RELEASE_PREFIX):
            release_number = release_number[len(RELEASE_PREFIX):]

        group = await self._resolve_group(group_id)
        branch = f"{RELEASE_PREFIX}{release_number}"
        source_ref = (source_ref or "").strip() or None

        async with self.locks.hold(group.id, branch):
            outcomes = await fan_out(
                lambda pid: self._release(pid, branch, source_ref),
                group.project_ids,
                self.fan_out_limit,
            )

        status, created, failed = _summarize(outcomes, "created")
        if status == "success":
            message = f"Release branches {branch} created for {group.name}"
        elif failed:
            message = f"Failed to create {branch} on: {', '.join(failed)}"
        else:
            message = f"No release branches created for {group.name}"

        return ReleaseOutcome(
            group=group.name,
            branch=branch,
            status=status,
            message=message,
            projects=outcomes,
        )
