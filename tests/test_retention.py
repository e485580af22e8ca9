"""RetentionSweeper 测试。"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.core.keys import QueueKeys
from src.scheduler import RetentionSweeper
from src.utils.serialization import dumps, isoformat

QUEUE = "test"
KEYS = QueueKeys(QUEUE)
NOW = datetime(2026, 6, 10, 0, 0, tzinfo=UTC)
SEVEN_DAYS = 7 * 24 * 60 * 60


def record(task_id: str, field: str, age_days: float | None) -> str:
    data = {"taskId": task_id, "url": "u"}
    data[field] = isoformat(NOW - timedelta(days=age_days)) if age_days is not None else "not-a-date"
    return dumps(data)


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_records(redis_client):
    await redis_client.hset(
        KEYS.completed,
        mapping={
            "old": record("old", "completedAt", 8),
            "fresh": record("fresh", "completedAt", 6),
            "undated": record("undated", "completedAt", None),
        },
    )
    await redis_client.hset(
        KEYS.failed,
        mapping={
            "old-failed": record("old-failed", "failedAt", 30),
            "new-failed": record("new-failed", "failedAt", 0.5),
            "garbage": "{not json",
        },
    )
    sweeper = RetentionSweeper(redis_client, QUEUE, SEVEN_DAYS)

    purged = await sweeper.sweep(now=NOW)

    assert purged == {"completed": 1, "failed": 1}
    assert set(await redis_client.hkeys(KEYS.completed)) == {"fresh", "undated"}
    assert set(await redis_client.hkeys(KEYS.failed)) == {"new-failed", "garbage"}


@pytest.mark.asyncio
async def test_sweep_uses_each_record_own_timestamp(redis_client):
    # 完成记录只看 completedAt，失败记录只看 failedAt
    await redis_client.hset(
        KEYS.completed,
        "t1",
        dumps({"taskId": "t1", "createdAt": isoformat(NOW - timedelta(days=20)), "completedAt": isoformat(NOW)}),
    )
    sweeper = RetentionSweeper(redis_client, QUEUE, SEVEN_DAYS)

    assert await sweeper.sweep(now=NOW) == {"completed": 0, "failed": 0}
    assert await redis_client.hexists(KEYS.completed, "t1")


@pytest.mark.asyncio
async def test_sweep_on_empty_store(redis_client):
    sweeper = RetentionSweeper(redis_client, QUEUE, SEVEN_DAYS)

    assert await sweeper.sweep() == {"completed": 0, "failed": 0}
