from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from api.src.models.pipeline import EnvironmentStage, PipelineSnapshot, Job

class GroupBase(BaseModel):
    name: str
    description: str = ""
    project_ids: List[int] = Field(default_factory=list, alias="projectIds")

    class Config:
        populate_by_name = True

class GroupIn(GroupBase):
    id: int

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Group name must not be blank")
        return value.strip()

class GroupOut(GroupBase):
    id: int

    class Config:
        populate_by_name = True
        from_attributes = True

class DeploymentRecordIn(BaseModel):
    module: str
    branch: str
    started: datetime
    environments: Optional[Dict[str, str]] = None

class DeploymentRecordOut(BaseModel):
    id: int
    module: str
    branch: str
    started: datetime
    environments: Dict[str, str]

    class Config:
        from_attributes = True

class DeployRequest(BaseModel):
    branch: str
    variables: Optional[Dict[str, Any]] = None
    environments: Optional[Dict[str, str]] = None
    skip_active: bool = True

class ReleaseRequest(BaseModel):
    release_number: str = Field(alias="releaseNumber")
    ref: Optional[str] = None

    class Config:
        populate_by_name = True

class PromoteRequest(BaseModel):
    branch: str
    stage: EnvironmentStage
    date: Optional[str] = None

    @field_validator("stage", mode="before")
    @classmethod
    def parse_stage(cls, value: Any) -> EnvironmentStage:
        if isinstance(value, EnvironmentStage):
            return value
        return EnvironmentStage.parse(str(value))

class TriggerPipelineRequest(BaseModel):
    ref: str = "main"
    variables: Dict[str, Any] = {}

class ProjectOutcome(BaseModel):
    project_id: int
    project_name: str
    status: str  # triggered | skipped | failed | created
    pipeline_id: Optional[int] = None
    web_url: Optional[str] = None
    error: Optional[Any] = None
    warnings: List[str] = []
    stages: List[str] = []

class DeploymentOutcome(BaseModel):
    group: str
    branch: str
    status: str  # success | partial | failed | skipped
    message: str
    projects: List[ProjectOutcome] = []
    record_id: Optional[int] = None

class ReleaseOutcome(BaseModel):
    group: str
    branch: str
    status: str
    message: str
    projects: List[ProjectOutcome] = []

class JobOutcome(BaseModel):
    project_id: int
    project_name: str
    pipeline_id: int
    job_id: int
    played: bool
    final_status: Optional[str] = None  # None when polling gave up
    error: Optional[Any] = None

class PromotionOutcome(BaseModel):
    stage: EnvironmentStage
    job_name: str
    jobs: List[JobOutcome] = []

    @property
    def failed(self) -> List[JobOutcome]:
        return [j for j in self.jobs if not j.played or j.final_status == "failed"]

class GateState(BaseModel):
    stage: EnvironmentStage
    job_name: str
    manual: int = 0
    succeeded: int = 0
    cleared: bool = False
    playable: bool = False
    blocked_by: List[str] = []

class BucketView(BaseModel):
    date: str
    group: str
    branch: str
    counts: Dict[str, int]
    pipelines: List[PipelineSnapshot]
    active: List[int]
    jobs: Dict[int, List[Job]] = {}
    gates: List[GateState] = []

class OverviewResponse(BaseModel):
    refreshed_at: Optional[datetime] = None
    buckets: List[BucketView] = []
