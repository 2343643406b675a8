from api.src.services.gitlab import GitLabClient, GitLabError
from api.src.services.ci_config import (
    parse_ci_config,
    environment_jobs,
    CIConfigError,
)
from api.src.services.errors import (
    ValidationFailedError,
    BranchPreconditionError,
    PromotionBlockedError,
    OperationInProgressError,
    GroupRevisionConflictError,
)
from api.src.services.aggregation import (
    Bucket,
    bucket_pipelines,
    latest_per_project,
    find_bucket,
    group_map,
)
from api.src.services.fetcher import PipelineSnapshotFetcher
from api.src.services.poller import JobCache, JobStatusPoller
from api.src.services.gates import EnvironmentGateCoordinator, evaluate_gate, evaluate_gates
from api.src.services.orchestrator import DeploymentOrchestrator
from api.src.services.scheduler import PipelineMonitor, MonitorRegistry
from api.src.services.store import GroupStore, DeploymentHistory, load_groups
from api.src.services.locks import OperationLocks

__all__ = [
    "GitLabClient",
    "GitLabError",
    "parse_ci_config",
    "environment_jobs",
    "CIConfigError",
    "ValidationFailedError",
    "BranchPreconditionError",
    "PromotionBlockedError",
    "OperationInProgressError",
    "GroupRevisionConflictError",
    "Bucket",
    "bucket_pipelines",
    "latest_per_project",
    "find_bucket",
    "group_map",
    "PipelineSnapshotFetcher",
    "JobCache",
    "JobStatusPoller",
    "EnvironmentGateCoordinator",
    "evaluate_gate",
    "evaluate_gates",
    "DeploymentOrchestrator",
    "PipelineMonitor",
    "MonitorRegistry",
    "GroupStore",
    "DeploymentHistory",
    "load_groups",
    "OperationLocks",
]
