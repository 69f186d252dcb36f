import asyncio

import pytest

from statcrawl.scheduler.application.scheduler_service import JobOutcome, SchedulerService
from statcrawl.scheduler.domain.job_config import SchedulerConfig
from statcrawl.scheduler.infrastructure.lock_repo import PostgresLocker


@pytest.fixture
def config() -> SchedulerConfig:
    return SchedulerConfig.model_validate(
        {"jobs": {"junior_stats": {"cron": "* * * * *", "timeout": "5s"}}}
    )


@pytest.mark.asyncio
async def test_two_instances_never_overlap(database, config):
    running = 0
    peak = 0

    async def handler():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.3)
        running -= 1

    instances = [SchedulerService(config, PostgresLocker(database), f"node-{i}") for i in range(2)]
    for instance in instances:
        instance.register_handler("junior_stats", handler)

    outcomes = await asyncio.gather(*(i.trigger("junior_stats") for i in instances))

    assert sorted(o.value for o in outcomes) == ["skipped", "success"]
    assert peak == 1
    assert await PostgresLocker(database).get("junior_stats") is None


@pytest.mark.asyncio
async def test_stop_releases_held_locks(database, config):
    locker = PostgresLocker(database)
    service = SchedulerService(config, locker, "node-0")
    release = asyncio.Event()

    async def handler():
        await release.wait()

    service.register_handler("junior_stats", handler)
    task = asyncio.create_task(service.trigger("junior_stats"))
    await asyncio.sleep(0.2)
    assert (await locker.get("junior_stats")).instance_id == "node-0"

    release.set()
    await service.stop(grace_seconds=2)

    assert await task is JobOutcome.SUCCESS
    assert await locker.get("junior_stats") is None
