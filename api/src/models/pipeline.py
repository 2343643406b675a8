"""
Snapshots of upstream pipeline and job state, and the environment stages
tracked through them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel

# Pipeline statuses after which a new pipeline may be triggered for a ref
TERMINAL_PIPELINE_STATUSES = frozenset({"success", "failed", "canceled"})

# Pipelines blocked on a manual job or a resource group
GATE_PENDING_STATUSES = frozenset({"manual", "waiting_for_resource"})

NON_TERMINAL_JOB_STATUSES = frozenset({"manual", "pending", "running"})
TERMINAL_JOB_STATUSES = frozenset({"success", "failed", "canceled", "skipped"})

class EnvironmentStage(str, Enum):
    QA = "QA"
    STAGING = "Staging"
    PRODUCTION = "Production"
    DEVELOP = "Develop"

    @property
    def job_name(self) -> str:
        return STAGE_JOB_NAMES[self]

    @property
    def predecessors(self) -> List["EnvironmentStage"]:
        """Stages that must be cleared across a module before this one."""
        if self not in PROMOTION_SEQUENCE:
            return []
        return list(PROMOTION_SEQUENCE[:PROMOTION_SEQUENCE.index(self)])

    @classmethod
    def from_job_name(cls, name: str) -> Optional["EnvironmentStage"]:
        return JOB_NAME_STAGES.get(name)

    @classmethod
    def parse(cls, value: str) -> "EnvironmentStage":
        """Accept a stage label ("staging") or its job name ("deploy_to_staging")."""
        text = (value or "").strip()
        for stage in cls:
            if stage.value.lower() == text.lower():
                return stage
        stage = STAGE_LABEL_ALIASES.get(text.lower()) or cls.from_job_name(text)
        if stage is None:
            raise ValueError(f"Unknown environment stage: {value!r}")
        return stage

STAGE_JOB_NAMES = {
    EnvironmentStage.QA: "deploy_to_qa",
    EnvironmentStage.STAGING: "deploy_to_staging",
    EnvironmentStage.PRODUCTION: "deploy_to_production",
    EnvironmentStage.DEVELOP: "deploy_to_develop",
}

JOB_NAME_STAGES = {name: stage for stage, name in STAGE_JOB_NAMES.items()}
JOB_NAME_STAGES["deploy_to_stage"] = EnvironmentStage.STAGING

STAGE_LABEL_ALIASES = {"stage": EnvironmentStage.STAGING}

PROMOTION_SEQUENCE = (
    EnvironmentStage.QA,
    EnvironmentStage.STAGING,
    EnvironmentStage.PRODUCTION,
)

def default_environment_status() -> Dict[str, str]:
    return {stage.value: "idle" for stage in EnvironmentStage}

class ProjectRef(BaseModel):
    id: int
    name: str
    path: str = ""
    group: Optional[str] = None

class PipelineSnapshot(BaseModel):
    id: int
    iid: Optional[int] = None
    project_id: int
    ref: str
    status: str
    sha: Optional[str] = None
    created_at: datetime
    web_url: str = ""
    duration: Optional[float] = None
    user: Optional[Dict[str, Any]] = None
    variables: List[Dict[str, Any]] = []

    # Tagged by the fetcher
    project_name: Optional[str] = None
    project_path: Optional[str] = None
    group_name: Optional[str] = None

    @property
    def created_date(self) -> str:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created.astimezone(timezone.utc).date().isoformat()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PIPELINE_STATUSES

    @property
    def display_name(self) -> str:
        return self.project_name or f"ID {self.project_id}"

class Job(BaseModel):
    id: int
    name: str
    status: str
    stage: str = ""
    pipeline_id: Optional[int] = None
    project_id: Optional[int] = None
    web_url: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def environment_stage(self) -> Optional[EnvironmentStage]:
        return EnvironmentStage.from_job_name(self.name)
