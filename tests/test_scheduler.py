"""RecurringScheduler 测试。"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from src.core.errors import StoreError, TaskValidationError
from src.core.keys import SCHEDULER_TASKS_KEY, QueueKeys
from src.scheduler import RecurringScheduler
from src.taskqueue import Producer
from src.utils.serialization import dumps, isoformat, loads

QUEUE = "test"
KEYS = QueueKeys(QUEUE)
TICK = datetime(2026, 5, 4, 12, 0, tzinfo=UTC)


@pytest.fixture
def make_scheduler(make_container, config):
    """创建调度器（各自持有独立的 Redis 客户端，共享同一份存储），测试结束时统一断开"""
    created: list[RecurringScheduler] = []

    def _make() -> RecurringScheduler:
        container = make_container()
        producer = Producer(container.redis_client, retention_seconds=config.retention_seconds, field_expiry=False)
        scheduler = RecurringScheduler(producer, container)
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        if scheduler._scheduler.running:
            scheduler._scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_schedule_without_cron_enqueues_one_time_task(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()

    task_id = await scheduler.schedule_task("https://example.com", priority="high", depth=1)

    assert await redis_client.sismember(KEYS.pending, task_id)
    assert await redis_client.hlen(SCHEDULER_TASKS_KEY) == 0
    assert scheduler.handles == {}
    queued = await scheduler.producer.list_queued(QUEUE)
    assert [(t.task_id, t.priority, t.depth) for t in queued] == [(task_id, "high", 1)]
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_schedule_with_cron_persists_and_registers(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()

    trigger_id = await scheduler.schedule_task("https://example.com", schedule="*/5 * * * *")

    record = loads(await redis_client.hget(SCHEDULER_TASKS_KEY, trigger_id))
    assert record["schedule"] == "*/5 * * * *"
    assert record["depth"] == 2
    assert record["priority"] == "normal"
    assert await redis_client.zcard(KEYS.priority) == 0

    status = await scheduler.get_status()
    assert status["scheduledCount"] == 1
    assert status["triggers"][0]["taskId"] == trigger_id
    assert status["triggers"][0]["nextRun"] is not None
    await scheduler.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"url": "u", "schedule": "not a cron"},
        {"url": "u", "schedule": "61 * * * *"},
        {"url": "", "schedule": None},
        {"url": None, "schedule": None},
        {"url": "u", "depth": 0},
        {"url": "u", "depth": "2"},
        {"url": "u", "depth": True},
        {"url": "u", "priority": 5},
        {"url": "u", "priority": ["high"], "schedule": "0 * * * *"},
    ],
)
async def test_invalid_requests_have_no_side_effects(make_scheduler, redis_client, kwargs):
    scheduler = make_scheduler()
    await scheduler.initialize()
    kwargs = dict(kwargs)
    url = kwargs.pop("url")

    with pytest.raises(TaskValidationError):
        await scheduler.schedule_task(url, **kwargs)

    assert await redis_client.hlen(SCHEDULER_TASKS_KEY) == 0
    assert await redis_client.zcard(KEYS.priority) == 0
    assert scheduler.handles == {}
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_cancel_scheduled_task_is_idempotent(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()
    trigger_id = await scheduler.schedule_task("u", schedule="0 * * * *")

    assert await scheduler.cancel_task(trigger_id) is True
    assert await scheduler.cancel_task(trigger_id) is True
    assert await scheduler.cancel_task("never-existed") is True

    assert scheduler.handles == {}
    assert not await redis_client.hexists(SCHEDULER_TASKS_KEY, trigger_id)
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_cancel_one_time_task_removes_it_from_pending(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()
    keep = await scheduler.schedule_task("keep")
    drop = await scheduler.schedule_task("drop")

    await scheduler.cancel_task(drop)

    assert [t.task_id for t in await scheduler.producer.list_queued(QUEUE)] == [keep]
    assert not await redis_client.sismember(KEYS.pending, drop)
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_fire_enqueues_task_and_updates_last_run(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()
    trigger_id = await scheduler.schedule_task("https://example.com", priority="medium", depth=3, schedule="0 * * * *")

    task_id = await scheduler.fire(trigger_id, now=TICK)

    queued = await scheduler.producer.list_queued(QUEUE)
    assert len(queued) == 1
    task = queued[0]
    assert task.task_id == task_id != trigger_id
    assert task.scheduled_task_id == trigger_id
    assert (task.url, task.depth, task.priority) == ("https://example.com", 3, "medium")
    assert await redis_client.sismember(KEYS.pending, task_id)

    record = loads(await redis_client.hget(SCHEDULER_TASKS_KEY, trigger_id))
    assert record["lastRun"] == isoformat(TICK)
    assert scheduler.handles[trigger_id].trigger.last_run == isoformat(TICK)
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_same_tick_fires_once_across_instances(make_scheduler):
    first = make_scheduler()
    second = make_scheduler()
    await first.initialize()
    trigger_id = await first.schedule_task("u", schedule="0 * * * *")
    await second.initialize()

    assert await first.fire(trigger_id, now=TICK) is not None
    assert await second.fire(trigger_id, now=TICK) is None
    assert await second.fire(trigger_id, now=TICK.replace(hour=13)) is not None

    assert len(await first.producer.list_queued(QUEUE)) == 2
    await first.disconnect()
    await second.disconnect()


@pytest.mark.asyncio
async def test_fire_failure_keeps_trigger_alive(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()
    trigger_id = await scheduler.schedule_task("u", schedule="0 * * * *")
    scheduler.producer.enqueue = AsyncMock(side_effect=StoreError("down"))

    assert await scheduler.fire(trigger_id, now=TICK) is None

    assert trigger_id in scheduler.handles
    record = loads(await redis_client.hget(SCHEDULER_TASKS_KEY, trigger_id))
    assert "lastRun" not in record
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_fire_drops_handle_cancelled_elsewhere(make_scheduler, redis_client):
    first = make_scheduler()
    second = make_scheduler()
    await first.initialize()
    trigger_id = await first.schedule_task("u", schedule="0 * * * *")
    await second.initialize()

    await first.cancel_task(trigger_id)

    assert await second.fire(trigger_id, now=TICK) is None
    assert trigger_id not in second.handles
    assert await redis_client.zcard(KEYS.priority) == 0
    assert not await redis_client.hexists(SCHEDULER_TASKS_KEY, trigger_id)
    await first.disconnect()
    await second.disconnect()


@pytest.mark.asyncio
async def test_restart_restores_all_triggers(make_scheduler, redis_client):
    before = make_scheduler()
    await before.initialize()
    ids = [await before.schedule_task(f"https://example.com/{i}", schedule="*/10 * * * *") for i in range(3)]
    await before.fire(ids[0], now=TICK)
    await before.disconnect()

    after = make_scheduler()
    restored = await after.initialize()

    assert restored == 3
    assert set(after.handles) == set(ids)
    status = await after.get_status()
    last_runs = {t["taskId"]: t.get("lastRun") for t in status["triggers"]}
    assert last_runs[ids[0]] == isoformat(TICK)
    assert last_runs[ids[1]] is None
    assert all(t["nextRun"] for t in status["triggers"])
    assert await after.initialize() == 0
    await after.disconnect()


@pytest.mark.asyncio
async def test_initialize_skips_unreadable_records(make_scheduler, redis_client):
    await redis_client.hset(SCHEDULER_TASKS_KEY, "broken", "not json")
    await redis_client.hset(
        SCHEDULER_TASKS_KEY, "bad-cron", dumps({"taskId": "bad-cron", "url": "u", "schedule": "whenever"})
    )
    await redis_client.hset(SCHEDULER_TASKS_KEY, "good", dumps({"taskId": "good", "url": "u", "schedule": "0 0 * * *"}))
    scheduler = make_scheduler()

    assert await scheduler.initialize() == 1
    assert set(scheduler.handles) == {"good"}
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_pause_resume_and_reset(make_scheduler):
    scheduler = make_scheduler()
    await scheduler.initialize()
    await scheduler.schedule_task("u", schedule="0 * * * *")
    await scheduler.schedule_task("one-time")

    paused = await scheduler.pause()
    assert paused["paused"] is True
    assert all(t["nextRun"] is None for t in paused["triggers"])

    # 暂停期间新建的周期任务同样处于暂停状态
    await scheduler.schedule_task("u2", schedule="30 * * * *")
    status = await scheduler.get_status()
    assert status["scheduledCount"] == 2
    assert all(t["nextRun"] is None for t in status["triggers"])

    resumed = await scheduler.resume()
    assert resumed["paused"] is False
    assert all(t["nextRun"] for t in resumed["triggers"])

    await scheduler.pause()
    reset = await scheduler.reset()
    assert reset["paused"] is False
    assert reset["scheduledCount"] == 2
    assert reset["queue"]["queued"] == 0
    assert reset["queue"]["pending"] == 0
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_get_tasks_and_get_task(make_scheduler):
    scheduler = make_scheduler()
    await scheduler.initialize()
    trigger_id = await scheduler.schedule_task("recurring", schedule="0 * * * *")
    task_id = await scheduler.schedule_task("once")

    tasks = await scheduler.get_tasks()

    assert {(t["taskId"], t["type"]) for t in tasks} == {(trigger_id, "scheduled"), (task_id, "queued")}
    assert (await scheduler.get_task(trigger_id))["state"] == "scheduled"
    assert (await scheduler.get_task(task_id))["state"] == "pending"
    assert (await scheduler.get_task("missing"))["state"] == "unknown"
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_get_tasks_skips_unreadable_records(make_scheduler, redis_client):
    scheduler = make_scheduler()
    await scheduler.initialize()
    trigger_id = await scheduler.schedule_task("recurring", schedule="0 * * * *")
    await redis_client.hset(SCHEDULER_TASKS_KEY, "list", "[1, 2]")
    await redis_client.hset(SCHEDULER_TASKS_KEY, "number", "42")
    await redis_client.hset(SCHEDULER_TASKS_KEY, "broken", "not json")

    tasks = await scheduler.get_tasks()

    assert [(t["taskId"], t["type"]) for t in tasks] == [(trigger_id, "scheduled")]
    await scheduler.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_handles_and_releases_store(make_scheduler):
    scheduler = make_scheduler()
    await scheduler.initialize()
    await scheduler.schedule_task("u", schedule="0 * * * *")

    await scheduler.disconnect()

    assert scheduler.handles == {}
    assert scheduler.container.redis_client is None
