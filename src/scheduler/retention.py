"""终态记录保留期清理。

每天扫描一次完成与失败记录，按每条记录自身的完成/失败时间删除超过保留期的条目。
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from loguru import logger

from ..core.keys import QueueKeys
from ..core.metrics import RETENTION_PURGED
from ..utils.serialization import loads, parse_timestamp, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    import redis.asyncio as redis


class RetentionSweeper:
    """过期终态记录清理器。

    Attributes:
        redis: Redis异步客户端
        keys: 队列键名
        retention: 保留期
    """

    def __init__(self, redis_client: redis.Redis, queue_name: str, retention_seconds: int):
        self.redis = redis_client
        self.keys = QueueKeys(queue_name)
        self.retention = timedelta(seconds=retention_seconds)

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """删除早于保留期的完成与失败记录。

        时间戳无法解析的记录会被保留并记录警告。

        Args:
            now: 当前时间，默认取 UTC 当前时间。

        Returns:
            dict[str, int]: 各状态删除的记录数。
        """
        cutoff = (now or utcnow()) - self.retention
        logger.info("Starting cleanup of terminal records older than {}", cutoff.isoformat())

        purged: dict[str, int] = {}
        for state, hash_key, field in (
            ("completed", self.keys.completed, "completedAt"),
            ("failed", self.keys.failed, "failedAt"),
        ):
            records = await self.redis.hgetall(hash_key)
            stale: list[str] = []
            for task_id, payload in records.items():
                try:
                    record = loads(payload)
                except ValueError:
                    logger.warning("Keeping unreadable {} record {}", state, task_id)
                    continue
                stamp = parse_timestamp(record.get(field)) if isinstance(record, dict) else None
                if stamp is None:
                    logger.warning("Keeping {} record {} without a valid {}", state, task_id, field)
                    continue
                if stamp < cutoff:
                    stale.append(task_id)

            if stale:
                await self.redis.hdel(hash_key, *stale)
                RETENTION_PURGED.labels(state=state).inc(len(stale))
            purged[state] = len(stale)

        logger.info("Cleanup of old tasks completed: {}", purged)
        return purged
