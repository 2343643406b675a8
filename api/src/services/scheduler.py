"""
Pipeline monitor - periodically rebuilds the pipeline snapshot for one login
and owns every job poll started on its behalf.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from api.src.config import get_settings
from api.src.models.pipeline import PipelineSnapshot, ProjectRef
from api.src.models.schemas import BucketView, GroupOut
from api.src.services.aggregation import (
    Buckets,
    active_pipelines,
    bucket_pipelines,
    group_map,
    iter_buckets,
)
from api.src.services.fetcher import PipelineSnapshotFetcher
from api.src.services.gates import evaluate_gates
from api.src.services.gitlab import GitLabClient, GitLabError
from api.src.services.poller import JobCache, JobStatusPoller

logger = logging.getLogger(__name__)
settings = get_settings()

GroupLoader = Callable[[], Awaitable[List[GroupOut]]]

class PipelineMonitor:
    def __init__(
        self,
        gateway,
        load_groups: GroupLoader,
        interval: Optional[float] = None,
        poller: Optional[JobStatusPoller] = None,
        fetcher: Optional[PipelineSnapshotFetcher] = None,
    ):
        self.gateway = gateway
        self.load_groups = load_groups
        self.interval = interval or settings.poll_interval_seconds
        self.poller = poller or JobStatusPoller(gateway, JobCache())
        self.fetcher = fetcher or PipelineSnapshotFetcher(gateway)

        self.groups: List[GroupOut] = []
        self.group_of: Dict[int, str] = {}
        self.snapshot: List[PipelineSnapshot] = []
        self.refreshed_at: Optional[datetime] = None

        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._polls: Dict[int, Set[asyncio.Task]] = {}

    @property
    def cache(self) -> JobCache:
        return self.poller.cache

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self):
        if not self.running:
            self._loop_task = asyncio.create_task(self._run())

    async def stop(self):
        tasks = [t for t in (self._loop_task, self._tick_task) if t is not None]
        tasks.extend(t for polls in self._polls.values() for t in polls)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._polls.clear()
        await self.gateway.close()

    async def _run(self):
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Pipeline monitor tick failed: {e}")
            await asyncio.sleep(self.interval)

    async def tick(self) -> bool:
        """
        Refresh the snapshot. A call made while a refresh is already in
        flight waits for that refresh instead of starting another one, and
        returns False. Cancelling any caller leaves the refresh running.
        """
        if self._tick_task is not None and not self._tick_task.done():
            logger.debug("Refresh already in flight, joining it")
            await asyncio.shield(self._tick_task)
            return False

        self._tick_task = asyncio.create_task(self._refresh())
        # The refresh outlives a cancelled caller
        await asyncio.shield(self._tick_task)
        return True

    async def ensure_ready(self):
        if self.refreshed_at is None:
            await self.tick()

    async def _project_refs(self, group_of: Dict[int, str]) -> List[ProjectRef]:
        try:
            projects = {p["id"]: p for p in await self.gateway.list_projects()}
        except GitLabError as e:
            logger.warning(f"Failed to list projects, using ids as names: {e.detail}")
            projects = {}

        refs = []
        for project_id, group in group_of.items():
            project = projects.get(project_id, {})
            refs.append(ProjectRef(
                id=project_id,
                name=project.get("name") or f"ID {project_id}",
                path=project.get("path_with_namespace", ""),
                group=group,
            ))
        return refs

    async def _refresh(self):
        groups = await self.load_groups()
        group_of = group_map(groups)
        refs = await self._project_refs(group_of)

        snapshot = await self.fetcher.fetch_all(refs)
        active = active_pipelines(bucket_pipelines(snapshot, group_of))

        await self.poller.refresh_manual_or_waiting(active)
        await self.poller.refresh_stale(active)

        active_ids = {p.id for p in active}
        dropped = self.cache.prune(active_ids)
        self._cancel_superseded(active_ids)

        self.groups = groups
        self.group_of = group_of
        self.snapshot = snapshot
        self.refreshed_at = datetime.now(timezone.utc)
        logger.debug(
            f"Snapshot: {len(snapshot)} pipelines, {len(active)} active, {len(dropped)} dropped from cache"
        )

    def _cancel_superseded(self, active_ids: Set[int]):
        for pipeline_id in [pid for pid in self._polls if pid not in active_ids]:
            for task in self._polls.pop(pipeline_id):
                logger.info(f"Cancelling poll for superseded pipeline {pipeline_id}")
                task.cancel()

    def watch_job(self, project_id: int, pipeline_id: int, job_id: int) -> asyncio.Task:
        """Follow a played job in the background until it finishes."""
        task = asyncio.create_task(
            self.poller.poll_until_terminal(project_id, job_id, pipeline_id)
        )
        self._polls.setdefault(pipeline_id, set()).add(task)

        def forget(done: asyncio.Task):
            polls = self._polls.get(pipeline_id)
            if polls is not None:
                polls.discard(done)
                if not polls:
                    del self._polls[pipeline_id]

        task.add_done_callback(forget)
        return task

    def active_polls(self) -> Dict[int, int]:
        return {pid: len(tasks) for pid, tasks in self._polls.items()}

    def buckets(self, group: Optional[str] = None, branch: Optional[str] = None) -> Buckets:
        return bucket_pipelines(self.snapshot, self.group_of, group, branch)

    def overview(self, group: Optional[str] = None, branch: Optional[str] = None) -> List[BucketView]:
        views = []
        for bucket in iter_buckets(self.buckets(group, branch)):
            active = bucket.active
            jobs = {p.id: self.cache.get(p.id) or [] for p in active}
            views.append(BucketView(
                date=bucket.date,
                group=bucket.group,
                branch=bucket.branch,
                counts=bucket.counts,
                pipelines=bucket.pipelines,
                active=[p.id for p in active],
                jobs=jobs,
                gates=evaluate_gates(active, jobs),
            ))
        return views

class MonitorRegistry:
    """
    One PipelineMonitor per login. A monitor whose login has not made a
    request for `idle_timeout` seconds is stopped by the sweep loop; the next
    request from that login starts a fresh one.
    """

    def __init__(
        self,
        load_groups: GroupLoader,
        gateway_factory: Callable[[str], object] = GitLabClient,
        interval: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.load_groups = load_groups
        self.gateway_factory = gateway_factory
        self.interval = interval
        self.idle_timeout = settings.monitor_idle_seconds if idle_timeout is None else idle_timeout
        self.sweep_interval = sweep_interval or settings.monitor_sweep_interval_seconds
        self._clock = clock
        self._monitors: Dict[str, PipelineMonitor] = {}
        self._last_used: Dict[str, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._monitors)

    def get(self, key: str) -> Optional[PipelineMonitor]:
        return self._monitors.get(key)

    def ensure(self, key: str, access_token: str) -> PipelineMonitor:
        monitor = self._monitors.get(key)
        if monitor is None:
            monitor = PipelineMonitor(
                self.gateway_factory(access_token),
                self.load_groups,
                interval=self.interval,
            )
            self._monitors[key] = monitor
            logger.info(f"Started pipeline monitor ({len(self._monitors)} running)")
        self._last_used[key] = self._clock()
        monitor.start()
        return monitor

    def start(self):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._run_sweeps())

    async def _run_sweeps(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception(f"Monitor sweep failed: {e}")

    async def sweep(self) -> List[str]:
        """Stop monitors idle for longer than `idle_timeout`; return their keys."""
        now = self._clock()
        idle = [
            key for key in self._monitors
            if now - self._last_used.get(key, now) > self.idle_timeout
        ]
        for key in idle:
            await self.stop(key)
        if idle:
            logger.info(f"Stopped {len(idle)} idle pipeline monitors ({len(self._monitors)} running)")
        return idle

    async def stop(self, key: str):
        monitor = self._monitors.pop(key, None)
        self._last_used.pop(key, None)
        if monitor is not None:
            await monitor.stop()
            logger.info("Stopped pipeline monitor")

    async def stop_all(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        for key in list(self._monitors):
            await self.stop(key)
