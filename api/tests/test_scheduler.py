"""Tests for the per-session pipeline monitor."""

import asyncio

import pytest

from api.src.models.pipeline import EnvironmentStage
from api.src.models.schemas import GroupOut
from api.src.services.poller import JobCache, JobStatusPoller
from api.src.services.scheduler import MonitorRegistry, PipelineMonitor
from conftest import FakeGitLab, hours_ago

GROUPS = [GroupOut(id=1, name="Checkout", project_ids=[101, 102])]

async def load_groups():
    return GROUPS

async def sleep_forever(_seconds):
    await asyncio.Event().wait()

def _seed(gitlab: FakeGitLab):
    gitlab.add_project(101, "cart-api")
    gitlab.add_project(102, "cart-web")
    gitlab.add_pipeline(101, 1, "develop", "manual", hours_ago(2), jobs=[
        (11, "deploy_to_qa", "success"),
        (12, "deploy_to_staging", "manual"),
    ])
    gitlab.add_pipeline(102, 2, "develop", "manual", hours_ago(2), jobs=[
        (21, "deploy_to_qa", "manual"),
    ])

@pytest.mark.asyncio
async def test_tick_builds_overview_with_gates(gitlab):
    _seed(gitlab)
    monitor = PipelineMonitor(gitlab, load_groups, interval=60)

    assert await monitor.tick() is True

    [bucket] = monitor.overview()
    assert (bucket.group, bucket.branch) == ("Checkout", "develop")
    assert sorted(bucket.active) == [1, 2]
    assert {job.id for job in bucket.jobs[1]} == {11, 12}

    gates = {gate.stage: gate for gate in bucket.gates}
    assert gates[EnvironmentStage.QA].playable
    assert gates[EnvironmentStage.STAGING].blocked_by == ["cart-web"]
    assert not gates[EnvironmentStage.STAGING].playable

@pytest.mark.asyncio
async def test_overlapping_ticks_are_coalesced(gitlab):
    _seed(gitlab)
    release = asyncio.Event()
    loads = []

    async def slow_loader():
        loads.append(1)
        await release.wait()
        return GROUPS

    monitor = PipelineMonitor(gitlab, slow_loader, interval=60)

    first = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    second = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    release.set()

    assert await first is True
    assert await second is False
    assert len(loads) == 1

@pytest.mark.asyncio
async def test_finished_pipelines_get_jobs_once(gitlab):
    gitlab.add_project(101, "cart-api")
    gitlab.add_pipeline(101, 1, "develop", "success", hours_ago(2), jobs=[(11, "deploy_to_qa", "success")])
    monitor = PipelineMonitor(gitlab, load_groups, interval=60)

    await monitor.tick()
    await monitor.tick()

    assert len(gitlab.calls_to("list_pipeline_jobs")) == 1
    assert monitor.cache.get(1)[0].status == "success"

@pytest.mark.asyncio
async def test_superseded_pipeline_loses_cache_and_polls(gitlab):
    _seed(gitlab)
    poller = JobStatusPoller(gitlab, JobCache(), max_attempts=5, interval=1, sleep=sleep_forever)
    monitor = PipelineMonitor(gitlab, load_groups, interval=60, poller=poller)
    await monitor.tick()

    gitlab.jobs[1][1]["status"] = "running"
    poll = monitor.watch_job(101, 1, 12)
    await asyncio.sleep(0)
    assert monitor.active_polls() == {1: 1}

    gitlab.add_pipeline(101, 3, "develop", "created", hours_ago(1))
    await monitor.tick()

    with pytest.raises(asyncio.CancelledError):
        await poll
    assert monitor.active_polls() == {}
    assert 1 not in monitor.cache
    assert 3 in monitor.cache

@pytest.mark.asyncio
async def test_watch_job_updates_cache_when_job_finishes(gitlab):
    _seed(gitlab)
    monitor = PipelineMonitor(gitlab, load_groups, interval=60)
    await monitor.tick()

    gitlab.jobs[1][1]["status"] = "success"
    job = await monitor.watch_job(101, 1, 12)

    assert job.status == "success"
    assert {j.id: j.status for j in monitor.cache.get(1)}[12] == "success"
    assert monitor.active_polls() == {}

@pytest.mark.asyncio
async def test_stop_closes_the_gateway(gitlab):
    monitor = PipelineMonitor(gitlab, load_groups, interval=60)
    monitor.start()
    assert monitor.running

    await monitor.stop()

    assert not monitor.running
    assert gitlab.closed

@pytest.mark.asyncio
async def test_registry_keeps_one_monitor_per_session():
    gateways = []

    def factory(token):
        gateways.append(token)
        return FakeGitLab()

    registry = MonitorRegistry(load_groups, gateway_factory=factory, interval=60)

    first = registry.ensure("session:a", "token-a")
    assert registry.ensure("session:a", "token-a") is first
    registry.ensure("session:b", "token-b")
    assert len(registry) == 2
    assert gateways == ["token-a", "token-b"]

    await registry.stop("session:a")
    assert registry.get("session:a") is None

    await registry.stop_all()
    assert len(registry) == 0

@pytest.mark.asyncio
async def test_jobs_cached_while_running_are_refetched_once_finished(gitlab):
    gitlab.add_project(101, "cart-api")
    gitlab.add_pipeline(101, 1, "develop", "running", hours_ago(2), jobs=[(11, "deploy_to_qa", "running")])
    monitor = PipelineMonitor(gitlab, load_groups, interval=60)
    await monitor.tick()
    assert monitor.cache.get(1)[0].status == "running"

    gitlab.pipelines[101][0]["status"] = "success"
    gitlab.jobs[1][0]["status"] = "success"
    await monitor.tick()
    await monitor.tick()

    assert monitor.cache.get(1)[0].status == "success"
    [bucket] = monitor.overview()
    gates = {gate.stage: gate for gate in bucket.gates}
    assert gates[EnvironmentStage.QA].cleared
    # running once, then once more after the status change
    assert len(gitlab.calls_to("list_pipeline_jobs")) == 2

@pytest.mark.asyncio
async def test_cancelled_first_caller_leaves_refresh_running(gitlab):
    _seed(gitlab)
    release = asyncio.Event()

    async def slow_loader():
        await release.wait()
        return GROUPS

    monitor = PipelineMonitor(gitlab, slow_loader, interval=60)

    first = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    second = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    release.set()
    assert await second is False
    assert monitor.refreshed_at is not None
    assert sorted(monitor.cache.snapshot()) == [1, 2]

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

@pytest.mark.asyncio
async def test_registry_sweep_stops_idle_monitors():
    gateways = {}

    def factory(token):
        gateways[token] = FakeGitLab()
        return gateways[token]

    clock = FakeClock()
    registry = MonitorRegistry(load_groups, gateway_factory=factory, interval=60, idle_timeout=300, clock=clock)

    registry.ensure("bearer:a", "token-a")
    registry.ensure("session:b", "token-b")

    clock.now += 200
    registry.ensure("session:b", "token-b")
    assert await registry.sweep() == []

    clock.now += 200
    assert await registry.sweep() == ["bearer:a"]
    assert registry.get("bearer:a") is None
    assert gateways["token-a"].closed
    assert registry.get("session:b") is not None

    await registry.stop_all()

@pytest.mark.asyncio
async def test_registry_stop_all_cancels_the_sweep_loop():
    registry = MonitorRegistry(load_groups, gateway_factory=lambda token: FakeGitLab(), interval=60, sweep_interval=60)
    registry.start()
    sweep_task = registry._sweep_task
    registry.ensure("session:a", "token-a")

    await registry.stop_all()

    assert sweep_task.cancelled()
    assert len(registry) == 0
