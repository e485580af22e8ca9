"""任务生产者模块。

负责把任务写入共享存储中的命名队列，并提供队列状态之间的原子迁移：
- enqueue: 写入优先级有序集合与等待集合
- claim: 原子领取当前优先级最高的任务（等待 -> 处理中）
- requeue_retry / record_completed / record_failed: 处理结果落地

生产者本身没有本地状态，所有副作用都落在 Redis 中；存储失败时记录日志并以
StoreError 抛给调用方，重试逻辑不在这里。
"""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from loguru import logger
from redis.exceptions import RedisError

from ..core.errors import StoreError, TaskValidationError
from ..core.keys import QueueKeys
from ..models import Rank, Task, new_task_id
from ..utils.serialization import dumps, isoformat, loads, utcnow

if TYPE_CHECKING:
    import redis.asyncio as redis
    from redis.asyncio.client import Pipeline


@contextmanager
def _store_call(action: str):
    try:
        yield
    except RedisError as e:
        logger.error("Failed to {}: {}", action, e)
        raise StoreError(f"Failed to {action}: {e}") from e


def _parse_member(member: str) -> Task | None:
    try:
        return Task.from_dict(loads(member))
    except (ValueError, TypeError) as e:
        logger.warning("Skipping malformed queue entry {!r}: {}", member[:200], e)
        return None


def _stray_task_id(member: str) -> str | None:
    """损坏条目中仍可识别的 taskId，用于同步清理等待集合。"""
    try:
        data = loads(member)
    except ValueError:
        return None
    task_id = data.get("taskId") if isinstance(data, dict) else None
    return task_id if isinstance(task_id, str) and task_id else None


class Producer:
    """任务生产者。

    Attributes:
        redis: Redis异步客户端
        retention_seconds: 终态记录的保留时间（秒）
        field_expiry: 是否对终态记录设置字段级过期（HEXPIRE，需要 Redis 7.4+）
    """

    def __init__(self, redis_client: redis.Redis, *, retention_seconds: int, field_expiry: bool = True):
        self.redis = redis_client
        self.retention_seconds = retention_seconds
        self.field_expiry = field_expiry

    async def enqueue(
        self,
        queue_name: str,
        task_data: Task | Mapping[str, Any],
        priority: str | None = None,
    ) -> str:
        """将任务加入队列。

        任务 id 缺省时自动分配，并重新标记创建时间。

        Args:
            queue_name: 队列名称。
            task_data: Task 对象或 camelCase 字段的映射。
            priority: 优先级名称，决定入队分值（high=3，medium=2，其余=1）。

        Returns:
            str: 任务 id。
        """
        data = task_data.to_dict() if isinstance(task_data, Task) else dict(task_data)
        data["taskId"] = data.get("taskId") or new_task_id()
        data["createdAt"] = isoformat(utcnow())
        if priority is not None:
            data["priority"] = priority
        try:
            task = Task.from_dict(data)
        except (ValueError, TypeError) as e:
            raise TaskValidationError(f"Invalid task data: {e}") from e

        keys = QueueKeys(queue_name)
        with _store_call(f"add task to queue {queue_name}"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(keys.priority, {dumps(task.to_dict()): int(task.rank)})
                pipe.sadd(keys.pending, task.task_id)
                await pipe.execute()

        logger.info("Task added to queue {} with priority {}: {}", queue_name, task.priority, task.task_id)
        return task.task_id

    async def claim(self, queue_name: str) -> Task | None:
        """原子领取优先级最高的等待任务。

        使用 WATCH/MULTI/EXEC 乐观事务：读取最高分成员后，在同一事务中将其移出
        优先级集合和等待集合并加入处理中集合。若期间队列被其他进程修改，事务整体
        作废并重试，因此同一任务最多只会被一个消费者领取。

        Returns:
            Task | None: 领取到的任务；队列为空时返回 None。
        """
        keys = QueueKeys(queue_name)

        async def _claim(pipe: Pipeline) -> Task | None:
            members = await pipe.zrevrange(keys.priority, 0, 0)
            if not members:
                return None
            member = members[0]
            task = _parse_member(member)
            pipe.multi()
            pipe.zrem(keys.priority, member)
            if task is not None:
                pipe.srem(keys.pending, task.task_id)
                pipe.sadd(keys.processing, task.task_id)
            elif (stray_id := _stray_task_id(member)) is not None:
                pipe.srem(keys.pending, stray_id)
            return task

        while True:
            with _store_call(f"claim task from queue {queue_name}"):
                task = await self.redis.transaction(_claim, keys.priority, value_from_callable=True)
            # 损坏的条目已在事务中移除，继续领取下一条
            if task is not None:
                return task
            with _store_call(f"inspect queue {queue_name}"):
                if not await self.redis.zcard(keys.priority):
                    return None

    async def requeue_retry(self, queue_name: str, task: Task) -> None:
        """失败任务重新入队：移出处理中集合，以最低分值回到等待状态。"""
        keys = QueueKeys(queue_name)
        with _store_call(f"requeue task {task.task_id}"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.srem(keys.processing, task.task_id)
                pipe.zadd(keys.priority, {dumps(task.to_dict()): int(Rank.NORMAL)})
                pipe.sadd(keys.pending, task.task_id)
                await pipe.execute()

    async def record_completed(self, queue_name: str, task: Task, result: Any) -> None:
        """写入完成记录并移出处理中集合。"""
        keys = QueueKeys(queue_name)
        await self._record_terminal(keys, keys.completed, task, task.completed_record(result))

    async def record_failed(self, queue_name: str, task: Task, error: str) -> None:
        """写入失败记录并移出处理中集合，不再重新入队。"""
        keys = QueueKeys(queue_name)
        await self._record_terminal(keys, keys.failed, task, task.failed_record(error))

    async def _record_terminal(self, keys: QueueKeys, hash_key: str, task: Task, record: dict[str, Any]) -> None:
        with _store_call(f"record terminal state of task {task.task_id}"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.srem(keys.processing, task.task_id)
                pipe.hset(hash_key, task.task_id, dumps(record))
                if self.field_expiry:
                    pipe.hexpire(hash_key, self.retention_seconds, task.task_id)
                await pipe.execute()

    async def remove(self, queue_name: str, task_id: str) -> bool:
        """从等待队列中移除指定任务。

        线性扫描优先级集合找到对应的序列化条目；队列深度在实践中有限，可以接受。

        Returns:
            bool: 是否在优先级集合中找到了该任务。
        """
        keys = QueueKeys(queue_name)
        with _store_call(f"remove task {task_id} from queue {queue_name}"):
            members = await self.redis.zrange(keys.priority, 0, -1)
            target = next(
                (m for m in members if (t := _parse_member(m)) is not None and t.task_id == task_id),
                None,
            )
            async with self.redis.pipeline(transaction=True) as pipe:
                if target is not None:
                    pipe.zrem(keys.priority, target)
                pipe.srem(keys.pending, task_id)
                await pipe.execute()

        logger.info("Task removed from queue {}: {}", queue_name, task_id)
        return target is not None

    async def list_queued(self, queue_name: str) -> list[Task]:
        """按领取顺序（分值从高到低）列出等待中的任务。"""
        keys = QueueKeys(queue_name)
        with _store_call(f"get tasks from queue {queue_name}"):
            members = await self.redis.zrevrange(keys.priority, 0, -1)
        return [t for m in members if (t := _parse_member(m)) is not None]

    async def counts(self, queue_name: str) -> dict[str, int]:
        """各状态的任务数量。"""
        keys = QueueKeys(queue_name)
        with _store_call(f"count tasks of queue {queue_name}"):
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.scard(keys.pending)
                pipe.scard(keys.processing)
                pipe.hlen(keys.completed)
                pipe.hlen(keys.failed)
                pipe.zcard(keys.priority)
                pending, processing, completed, failed, queued = await pipe.execute()
        return {
            "pending": int(pending),
            "processing": int(processing),
            "completed": int(completed),
            "failed": int(failed),
            "queued": int(queued),
        }

    async def find(self, queue_name: str, task_id: str) -> dict[str, Any]:
        """查询任务当前所处的状态。

        Returns:
            dict: ``{"state": ..., "task": ...}``，state 取值为 pending / processing /
            completed / failed / unknown；终态时 task 为终态记录。
        """
        keys = QueueKeys(queue_name)
        with _store_call(f"look up task {task_id}"):
            completed = await self.redis.hget(keys.completed, task_id)
            if completed is not None:
                return {"state": "completed", "task": loads(completed)}
            failed = await self.redis.hget(keys.failed, task_id)
            if failed is not None:
                return {"state": "failed", "task": loads(failed)}
            if await self.redis.sismember(keys.processing, task_id):
                return {"state": "processing", "task": {"taskId": task_id}}
            if await self.redis.sismember(keys.pending, task_id):
                queued = next((t for t in await self.list_queued(queue_name) if t.task_id == task_id), None)
                return {"state": "pending", "task": queued.to_dict() if queued else {"taskId": task_id}}
        return {"state": "unknown", "task": None}

    async def clear_transient(self, queue_name: str) -> None:
        """清空队列的瞬态状态（优先级集合、等待集合、处理中集合）。"""
        keys = QueueKeys(queue_name)
        with _store_call(f"reset queue {queue_name}"):
            await self.redis.delete(*keys.transient)
        logger.info("Transient state of queue {} cleared.", queue_name)
