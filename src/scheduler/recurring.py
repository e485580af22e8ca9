"""周期任务调度器模块。

该模块实现了基于 cron 表达式的周期调度：
1. schedule_task: 带 schedule 时持久化周期任务并注册触发句柄；否则直接投递一次性任务
2. cancel_task: 停止触发句柄并删除持久化定义，或从等待队列移除一次性任务
3. initialize: 启动时从共享存储重新加载所有周期任务，恢复触发句柄
4. 每次触发生成一个新的一次性任务交给生产者，并更新 lastRun
5. 每天运行一次终态记录的保留期清理

存活的触发句柄保存在调度器自身持有的表中，只通过 schedule_task / cancel_task
以及启动时的重新加载修改。
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from redis.exceptions import RedisError

from ..core.errors import StoreError, TaskValidationError
from ..core.keys import SCHEDULER_TASKS_KEY, firing_lock_key
from ..core.lock import RedisLockManager
from ..core.metrics import TRIGGER_FIRINGS
from ..models import Task, Trigger, new_task_id, normalize_priority
from ..utils.serialization import dumps, isoformat, loads, utcnow
from .retention import RetentionSweeper

if TYPE_CHECKING:
    from datetime import datetime

    from apscheduler.job import Job
    from redis.asyncio.client import Pipeline

    from ..core import Container
    from ..core.lock import LockManager
    from ..taskqueue import Producer

RETENTION_JOB_ID = "retention-sweep"


@dataclasses.dataclass(slots=True)
class TriggerHandle:
    """存活的触发句柄：周期任务定义及其 APScheduler 任务。"""

    trigger: Trigger
    job: Job


class RecurringScheduler:
    """周期任务调度器主类。

    Attributes:
        producer: 任务生产者。
        container: 依赖注入容器，提供 Redis 客户端与配置。
        queue_name: 触发生成的任务投递到的队列。
        locks: 触发去重锁。
        sweeper: 终态记录清理器。
    """

    def __init__(self, producer: Producer, container: Container, *, locks: LockManager | None = None):
        config = container.config
        if container.redis_client is None:
            raise RuntimeError("Container is not set up properly.")

        self.producer = producer
        self.container = container
        self.redis = container.redis_client
        self.queue_name = config.queue_name
        self.timezone = config.scheduler_timezone
        self.default_depth = config.default_depth
        self.default_priority = config.default_priority
        self.cleanup_cron = config.cleanup_cron
        self.locks: LockManager = locks or RedisLockManager(self.redis)
        self.sweeper = RetentionSweeper(self.redis, self.queue_name, config.retention_seconds)

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._handles: dict[str, TriggerHandle] = {}
        self._paused = False
        self._initialized = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def handles(self) -> dict[str, TriggerHandle]:
        """存活触发句柄的只读副本。"""
        return dict(self._handles)

    async def initialize(self) -> int:
        """启动调度器并恢复持久化的周期任务（幂等）。

        必须在对外接受请求之前完成：没有存活句柄的周期任务不会触发。

        Returns:
            int: 本次恢复的触发句柄数量。
        """
        if self._initialized:
            return 0

        self._scheduler.start()
        loaded = await self.load_triggers()
        self._scheduler.add_job(
            self.run_retention_sweep,
            self._parse_cron(self.cleanup_cron),
            id=RETENTION_JOB_ID,
            name="Daily retention sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._initialized = True
        logger.info("Crawler scheduler initialized with {} recurring task(s).", loaded)
        return loaded

    async def load_triggers(self) -> int:
        """从 ``scheduler:tasks`` 重新加载周期任务并注册触发句柄。

        无法解析或 cron 表达式非法的记录会被跳过并记录警告。
        """
        try:
            records = await self.redis.hgetall(SCHEDULER_TASKS_KEY)
        except RedisError as e:
            logger.error("Failed to load scheduled tasks: {}", e)
            raise StoreError(f"Failed to load scheduled tasks: {e}") from e

        loaded = 0
        for trigger_id, payload in records.items():
            if trigger_id in self._handles:
                continue
            try:
                trigger = Trigger.from_dict(loads(payload))
                self._register(trigger)
            except (ValueError, TypeError, TaskValidationError) as e:
                logger.warning("Skipping persisted task {}: {}", trigger_id, e)
                continue
            loaded += 1
            logger.info("Loaded scheduled task: {} - {} - Schedule: {}", trigger_id, trigger.url, trigger.schedule)
        return loaded

    def _parse_cron(self, expression: str) -> CronTrigger:
        if not isinstance(expression, str) or not expression.strip():
            raise TaskValidationError("Cron expression is required")
        try:
            return CronTrigger.from_crontab(expression.strip(), timezone=self.timezone)
        except ValueError as e:
            raise TaskValidationError(f"Invalid cron expression: {expression}") from e

    def _register(self, trigger: Trigger) -> TriggerHandle:
        job = self._scheduler.add_job(
            self.fire,
            self._parse_cron(trigger.schedule),
            args=[trigger.task_id],
            id=f"trigger:{trigger.task_id}",
            name=trigger.url,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if self._paused:
            job.pause()
        handle = TriggerHandle(trigger=trigger, job=job)
        self._handles[trigger.task_id] = handle
        return handle

    def _drop_handle(self, trigger_id: str) -> bool:
        handle = self._handles.pop(trigger_id, None)
        if handle is None:
            return False
        try:
            handle.job.remove()
        except JobLookupError:
            pass
        return True

    async def schedule_task(
        self,
        url: str | None,
        *,
        priority: str | None = None,
        depth: Any = None,
        schedule: str | None = None,
    ) -> str:
        """创建抓取任务。

        带 schedule 时校验 cron 表达式、持久化周期任务并注册触发句柄；
        不带 schedule 时立即投递一个一次性任务，不创建周期任务。

        Args:
            url: 待抓取地址，必填。
            priority: 优先级名称，缺省使用配置中的默认值。
            depth: 抓取深度，正整数，缺省使用配置中的默认值。
            schedule: cron 表达式（5 段）。

        Returns:
            str: 新任务（或周期任务）的 id。

        Raises:
            TaskValidationError: 参数不合法，不产生任何副作用。
            StoreError: 共享存储不可用。
        """
        if not isinstance(url, str) or not url.strip():
            raise TaskValidationError("URL is required")
        url = url.strip()

        if depth is None:
            depth = self.default_depth
        if isinstance(depth, bool) or not isinstance(depth, int) or depth <= 0:
            raise TaskValidationError("Depth must be a positive integer")

        if priority is not None and not isinstance(priority, str):
            raise TaskValidationError("Priority must be a string")
        priority_class = normalize_priority(priority or self.default_priority)
        task_id = new_task_id()
        now = utcnow()

        if schedule:
            self._parse_cron(schedule)
            trigger = Trigger(
                task_id=task_id,
                url=url,
                schedule=schedule.strip(),
                depth=depth,
                priority=priority_class,
                created_at=isoformat(now),
            )
            try:
                await self.redis.hset(SCHEDULER_TASKS_KEY, task_id, dumps(trigger.to_dict()))
            except RedisError as e:
                logger.error("Failed to schedule task: {}", e)
                raise StoreError(f"Failed to persist scheduled task: {e}") from e
            self._register(trigger)
            logger.info("Created scheduled task: {} - {} - Schedule: {}", task_id, url, trigger.schedule)
        else:
            task = Task.create(url, depth=depth, priority=priority_class, task_id=task_id, now=now)
            await self.producer.enqueue(self.queue_name, task, priority_class)
            logger.info("Created one-time task: {} - {}", task_id, url)

        return task_id

    async def cancel_task(self, task_id: str) -> bool:
        """取消任务（幂等）。

        存在存活触发句柄时停止并删除其持久化定义；否则视为一次性任务，
        尝试从等待队列中移除。已在派发中的任务不会被打断。
        """
        if self._drop_handle(task_id):
            try:
                await self.redis.hdel(SCHEDULER_TASKS_KEY, task_id)
            except RedisError as e:
                logger.error("Failed to cancel task {}: {}", task_id, e)
                raise StoreError(f"Failed to delete scheduled task {task_id}: {e}") from e
            logger.info("Cancelled scheduled task: {}", task_id)
        else:
            await self.producer.remove(self.queue_name, task_id)
            logger.info("Cancelled one-time task: {}", task_id)
        return True

    async def fire(self, trigger_id: str, now: datetime | None = None) -> str | None:
        """执行一次触发：生成新任务投递到队列，并更新周期任务的 lastRun。

        触发失败只记录日志，不会停用周期任务，下一次触发独立进行。
        持久化定义已被删除（例如在其他进程中取消）时，丢弃本地句柄。

        Returns:
            str | None: 新投递任务的 id；跳过或失败时返回 None。
        """
        if trigger_id not in self._handles:
            return None
        moment = now or utcnow()

        try:
            payload = await self.redis.hget(SCHEDULER_TASKS_KEY, trigger_id)
            if payload is None:
                logger.info("Scheduled task {} is no longer persisted; dropping its handle.", trigger_id)
                self._drop_handle(trigger_id)
                TRIGGER_FIRINGS.labels(status="skipped").inc()
                return None
            trigger = Trigger.from_dict(loads(payload))

            if not await self.locks.acquire(firing_lock_key(trigger_id, moment)):
                logger.debug("Scheduled task {} already fired at {} by another instance.", trigger_id, moment)
                TRIGGER_FIRINGS.labels(status="skipped").inc()
                return None

            logger.info("Running scheduled task: {} - {}", trigger_id, trigger.url)
            task = trigger.spawn(moment)
            await self.producer.enqueue(self.queue_name, task, trigger.priority)

            updated = trigger.with_last_run(moment)
            if await self._touch_last_run(updated) and trigger_id in self._handles:
                self._handles[trigger_id].trigger = updated

        except Exception as e:
            logger.exception("Failed to execute scheduled task {}: {}", trigger_id, e)
            TRIGGER_FIRINGS.labels(status="error").inc()
            return None

        TRIGGER_FIRINGS.labels(status="success").inc()
        logger.info("Scheduled task executed: {}", trigger_id)
        return task.task_id

    async def _touch_last_run(self, trigger: Trigger) -> bool:
        """仅在定义仍存在时写回 lastRun，避免复活已取消的周期任务。"""

        async def _update(pipe: Pipeline) -> bool:
            if not await pipe.hexists(SCHEDULER_TASKS_KEY, trigger.task_id):
                return False
            pipe.multi()
            pipe.hset(SCHEDULER_TASKS_KEY, trigger.task_id, dumps(trigger.to_dict()))
            return True

        return await self.redis.transaction(_update, SCHEDULER_TASKS_KEY, value_from_callable=True)

    async def run_retention_sweep(self) -> dict[str, int] | None:
        try:
            return await self.sweeper.sweep()
        except Exception as e:
            logger.exception("Error during cleanup: {}", e)
            return None

    async def get_tasks(self) -> list[dict[str, Any]]:
        """合并持久化的周期任务（scheduled）与等待中的任务（queued）。"""
        try:
            records = await self.redis.hgetall(SCHEDULER_TASKS_KEY)
        except RedisError as e:
            logger.error("Failed to get tasks: {}", e)
            raise StoreError(f"Failed to get scheduled tasks: {e}") from e

        scheduled: list[dict[str, Any]] = []
        for trigger_id, payload in records.items():
            try:
                record = loads(payload)
            except ValueError:
                record = None
            if not isinstance(record, dict):
                logger.warning("Skipping unreadable scheduled task {}", trigger_id)
                continue
            scheduled.append({**record, "type": "scheduled"})
        queued = [{**t.to_dict(), "type": "queued"} for t in await self.producer.list_queued(self.queue_name)]
        return scheduled + queued

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """查询单个任务：周期任务返回其定义，否则返回队列中的状态。"""
        try:
            payload = await self.redis.hget(SCHEDULER_TASKS_KEY, task_id)
        except RedisError as e:
            raise StoreError(f"Failed to look up task {task_id}: {e}") from e
        if payload is not None:
            return {"state": "scheduled", "task": loads(payload)}
        return await self.producer.find(self.queue_name, task_id)

    async def get_status(self) -> dict[str, Any]:
        triggers = []
        for handle in self._handles.values():
            job = self._scheduler.get_job(handle.job.id) or handle.job
            next_run = getattr(job, "next_run_time", None)
            triggers.append({**handle.trigger.to_dict(), "nextRun": isoformat(next_run) if next_run else None})
        return {
            "paused": self._paused,
            "scheduledCount": len(self._handles),
            "triggers": triggers,
            "queue": await self.producer.counts(self.queue_name),
        }

    async def pause(self) -> dict[str, Any]:
        """暂停所有触发句柄，保留其持久化定义。"""
        self._paused = True
        for handle in self._handles.values():
            handle.job.pause()
        logger.info("Paused {} recurring task(s).", len(self._handles))
        return await self.get_status()

    async def resume(self) -> dict[str, Any]:
        """恢复所有触发句柄。"""
        self._paused = False
        for handle in self._handles.values():
            handle.job.resume()
        logger.info("Resumed {} recurring task(s).", len(self._handles))
        return await self.get_status()

    async def reset(self) -> dict[str, Any]:
        """清空队列瞬态状态并恢复所有触发句柄。"""
        await self.producer.clear_transient(self.queue_name)
        return await self.resume()

    async def disconnect(self) -> None:
        """停止所有触发句柄并释放存储连接，仅在进程退出时调用。"""
        for trigger_id in list(self._handles):
            self._drop_handle(trigger_id)
            logger.info("Stopped scheduled task: {}", trigger_id)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._initialized = False
        await self.container.close_redis()
        logger.info("Crawler scheduler disconnected.")
