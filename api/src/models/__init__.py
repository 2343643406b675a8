from api.src.models.group import ProjectGroup, GroupCatalog, BulkDeployment
from api.src.models.pipeline import (
    EnvironmentStage,
    PROMOTION_SEQUENCE,
    ProjectRef,
    PipelineSnapshot,
    Job,
)
from api.src.models.schemas import (
    GroupIn,
    GroupOut,
    DeploymentRecordIn,
    DeploymentRecordOut,
    DeploymentOutcome,
    ReleaseOutcome,
    PromotionOutcome,
    GateState,
    BucketView,
)

__all__ = [
    "ProjectGroup",
    "GroupCatalog",
    "BulkDeployment",
    "EnvironmentStage",
    "PROMOTION_SEQUENCE",
    "ProjectRef",
    "PipelineSnapshot",
    "Job",
    "GroupIn",
    "GroupOut",
    "DeploymentRecordIn",
    "DeploymentRecordOut",
    "DeploymentOutcome",
    "ReleaseOutcome",
    "PromotionOutcome",
    "GateState",
    "BucketView",
]
