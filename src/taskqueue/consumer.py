"""消费者池模块。

单个轮询循环从共享存储领取最高优先级的任务，异步派发给抽取服务，
通过在途计数限制最大并发，并把处理结果写回存储：
- 成功: 写入完成记录
- 失败且未超过重试上限: 以最低优先级重新入队，重试次数加一
- 失败且已达重试上限: 写入失败记录，不再入队

轮询循环中的存储错误只会记录日志并退避重试，不会终止进程。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from ..core.errors import StoreError
from ..core.metrics import INFLIGHT_TASKS, TASK_DURATION, TASKS_PROCESSED

if TYPE_CHECKING:
    from ..models import Task
    from .producer import Producer


class Extractor(Protocol):
    async def extract(self, task: Task) -> Any: ...


class ConsumerPool:
    """带并发上限的消费者池。

    Attributes:
        producer: 任务生产者，提供领取与结果落地的原子操作。
        extraction: 抽取服务客户端。
        queue_name: 消费的队列名称。
        max_concurrent: 同时在途的任务上限。
        poll_interval: 空闲或满载时的轮询间隔（秒）。
        max_retries: 最大重试次数，超过后任务进入失败状态。
        max_backoff: 存储不可用时的最大退避时间（秒）。
        log: 日志记录器。
    """

    def __init__(
        self,
        producer: Producer,
        extraction: Extractor,
        *,
        queue_name: str = "crawler",
        max_concurrent: int = 5,
        poll_interval: float = 1.0,
        max_retries: int = 3,
        max_backoff: float = 30.0,
    ):
        self.producer = producer
        self.extraction = extraction
        self.queue_name = queue_name
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.max_backoff = max_backoff
        self.log = logging.getLogger("consumer")

        self._inflight: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._runner: asyncio.Task[None] | None = None

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self, max_concurrent: int | None = None) -> asyncio.Task[None]:
        """启动轮询循环（幂等）。

        Args:
            max_concurrent: 覆盖配置中的并发上限。

        Returns:
            asyncio.Task: 轮询循环所在的任务。
        """
        if self._runner is not None and not self._runner.done():
            return self._runner
        if max_concurrent is not None:
            if max_concurrent <= 0:
                raise ValueError("max_concurrent must be greater than 0")
            self.max_concurrent = max_concurrent
        self._stop_event.clear()
        self._runner = asyncio.create_task(self.run(), name="consumer-pool")
        return self._runner

    def stop(self) -> None:
        """请求轮询循环在当前迭代结束后退出。"""
        self._stop_event.set()

    async def wait_closed(self) -> None:
        """等待轮询循环以及所有在途任务结束。"""
        if self._runner is not None:
            await self._runner

    def stats(self) -> dict[str, Any]:
        return {"running": self.running, "inFlight": self.in_flight, "maxConcurrent": self.max_concurrent}

    async def run(self) -> None:
        """轮询主循环。

        每次迭代：
        1. 在途任务数达到上限时休眠一个轮询间隔
        2. 原子领取最高优先级的等待任务，队列为空时休眠
        3. 异步派发领取到的任务，不阻塞循环
        """
        self.log.info(f"Consumer started on queue '{self.queue_name}' (max_concurrent={self.max_concurrent}).")
        failures = 0
        try:
            while not self._stop_event.is_set():
                try:
                    if self.in_flight >= self.max_concurrent:
                        await self._sleep(self.poll_interval)
                        continue

                    task = await self.producer.claim(self.queue_name)
                    failures = 0
                    if task is None:
                        await self._sleep(self.poll_interval)
                        continue

                    self._dispatch(task)

                except Exception as e:
                    failures += 1
                    delay = min(self.poll_interval * 2 ** (failures - 1), self.max_backoff)
                    self.log.exception(f"Error in consume loop (backing off {delay:.1f}s): {e}")
                    await self._sleep(delay)

        except asyncio.CancelledError:
            for job in list(self._inflight):
                job.cancel()
            await asyncio.gather(*self._inflight, return_exceptions=True)
            self.log.info("Consumer cancelled. Exiting.")
            raise

        if self._inflight:
            self.log.info(f"Consumer stopping; waiting for {self.in_flight} in-flight task(s).")
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self.log.info("Consumer stopped processing messages.")

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _dispatch(self, task: Task) -> None:
        job = asyncio.create_task(self._process(task), name=f"dispatch-{task.task_id}")
        self._inflight.add(job)
        INFLIGHT_TASKS.set(len(self._inflight))
        job.add_done_callback(self._on_done)

    def _on_done(self, job: asyncio.Task[None]) -> None:
        self._inflight.discard(job)
        INFLIGHT_TASKS.set(len(self._inflight))
        if not job.cancelled() and job.exception() is not None:
            self.log.error(f"Dispatch {job.get_name()} crashed: {job.exception()}")

    async def _process(self, task: Task) -> None:
        """派发单个任务并记录结果。"""
        self.log.info(f"Processing task: {task.task_id} - URL: {task.url}")
        try:
            with TASK_DURATION.time():
                result = await self.extraction.extract(task)
        except Exception as e:
            await self._handle_failure(task, str(e) or type(e).__name__)
            return

        try:
            await self.producer.record_completed(self.queue_name, task, result)
        except StoreError as e:
            self.log.error(f"Task {task.task_id} succeeded but its completion could not be recorded: {e}")
            return

        TASKS_PROCESSED.labels(outcome="completed").inc()
        self.log.info(f"Task {task.task_id} processed successfully")

    async def _handle_failure(self, task: Task, error: str) -> None:
        """失败处理：未超过重试上限时以最低优先级重新入队，否则写入失败记录。"""
        self.log.warning(f"Failed to process task {task.task_id}: {error}")
        try:
            if task.retry_count < self.max_retries:
                retried = task.with_retry(error)
                await self.producer.requeue_retry(self.queue_name, retried)
                TASKS_PROCESSED.labels(outcome="retried").inc()
                self.log.info(f"Task {task.task_id} requeued for retry ({retried.retry_count}/{self.max_retries})")
            else:
                await self.producer.record_failed(self.queue_name, task, error)
                TASKS_PROCESSED.labels(outcome="failed").inc()
                self.log.error(f"Task {task.task_id} marked as failed after {self.max_retries} retries")
        except StoreError as e:
            self.log.error(f"Could not record failure of task {task.task_id}: {e}")
