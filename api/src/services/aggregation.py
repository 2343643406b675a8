"""
Bucketing of pipeline snapshots by (date, group, branch) and selection of the
active pipeline per project.
"""

from datetime import timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from api.src.models.pipeline import PipelineSnapshot

BucketKey = Tuple[str, str]  # (group name, branch)

def _recency(pipeline: PipelineSnapshot):
    created = pipeline.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (created, pipeline.id)

def latest_per_project(pipelines: Iterable[PipelineSnapshot]) -> List[PipelineSnapshot]:
    """Keep the most recently created pipeline of each project (ties go to the higher id)."""
    latest: Dict[int, PipelineSnapshot] = {}
    for pipeline in pipelines:
        current = latest.get(pipeline.project_id)
        if current is None or _recency(pipeline) > _recency(current):
            latest[pipeline.project_id] = pipeline
    return list(latest.values())

class Bucket:
    """Pipelines of one group on one branch, created on one day."""

    def __init__(self, date: str, group: str, branch: str):
        self.date = date
        self.group = group
        self.branch = branch
        self.pipelines: List[PipelineSnapshot] = []

    @property
    def key(self) -> BucketKey:
        return (self.group, self.branch)

    @property
    def counts(self) -> Dict[str, int]:
        statuses = [p.status for p in self.pipelines]
        return {
            "success": statuses.count("success"),
            "failed": statuses.count("failed"),
            "running": statuses.count("running"),
            "total": len(statuses),
        }

    @property
    def active(self) -> List[PipelineSnapshot]:
        return latest_per_project(self.pipelines)

    def __repr__(self) -> str:
        return f"Bucket({self.date!r}, {self.group!r}, {self.branch!r}, {len(self.pipelines)} pipelines)"

Buckets = Dict[str, Dict[BucketKey, Bucket]]

def group_map(groups) -> Dict[int, str]:
    """Map project id to group name. A project listed in several groups maps to the last one."""
    mapping: Dict[int, str] = {}
    for group in groups:
        for project_id in group.project_ids:
            mapping[project_id] = group.name
    return mapping

def bucket_pipelines(
    pipelines: Iterable[PipelineSnapshot],
    group_of: Mapping[int, str],
    filter_group: Optional[str] = None,
    filter_branch: Optional[str] = None,
) -> Buckets:
    """
    Partition pipelines into date -> (group, branch) -> Bucket.
    Pipelines of projects that belong to no group are dropped.
    """
    buckets: Buckets = {}

    for pipeline in pipelines:
        group = group_of.get(pipeline.project_id)
        if group is None:
            continue
        if filter_group is not None and group != filter_group:
            continue
        if filter_branch is not None and pipeline.ref != filter_branch:
            continue

        date = pipeline.created_date
        by_key = buckets.setdefault(date, {})
        key = (group, pipeline.ref)
        if key not in by_key:
            by_key[key] = Bucket(date, group, pipeline.ref)
        by_key[key].pipelines.append(pipeline)

    return buckets

def iter_buckets(buckets: Buckets) -> List[Bucket]:
    """Flatten buckets, newest date first."""
    ordered = []
    for date in sorted(buckets, reverse=True):
        ordered.extend(buckets[date].values())
    return ordered

def find_bucket(
    buckets: Buckets,
    group: str,
    branch: str,
    date: Optional[str] = None,
) -> Optional[Bucket]:
    """The bucket for group and branch on `date`, or on the newest date that has one."""
    if date is not None:
        return buckets.get(date, {}).get((group, branch))

    for candidate in iter_buckets(buckets):
        if candidate.key == (group, branch):
            return candidate
    return None

def active_pipelines(buckets: Buckets) -> List[PipelineSnapshot]:
    return [p for bucket in iter_buckets(buckets) for p in bucket.active]
