"""队列监控模块。

该模块负责定期采集运行指标，包括：
1. 事件循环延迟 (Event Loop Lag)
2. 队列各状态的任务数量 (Queue Size)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from .metrics import EVENT_LOOP_LAG, QUEUE_SIZE

if TYPE_CHECKING:
    from ..taskqueue import Producer


class QueueMonitor:
    """队列监控器。

    在后台运行，定期采集指标。采集失败只在连续出错的第一次记录警告。

    Attributes:
        producer: 任务生产者，用于读取队列计数。
        queue_name: 监控的队列名称。
        interval: 采集间隔（秒）。
    """

    def __init__(self, producer: Producer, queue_name: str, interval: float = 5.0):
        if interval <= 0:
            raise ValueError("interval must be greater than 0")

        self.producer = producer
        self.queue_name = queue_name
        self.interval = interval
        self._error_logged = False

    async def collect(self) -> None:
        """采集一次队列计数。"""
        try:
            counts = await self.producer.counts(self.queue_name)
        except Exception as e:
            if not self._error_logged:
                logger.warning("Failed to collect queue stats: {}", e)
                self._error_logged = True
            return

        for state in ("pending", "processing", "completed", "failed"):
            QUEUE_SIZE.labels(state=state).set(counts[state])
        self._error_logged = False

    async def run(self) -> None:
        """运行监控循环。"""
        logger.info("Queue Monitor started.")
        loop = asyncio.get_running_loop()
        expected_wake_time = loop.time() + self.interval

        try:
            while True:
                sleep_for = max(0.0, expected_wake_time - loop.time())
                await asyncio.sleep(sleep_for)

                try:
                    real_wake_time = loop.time()
                    EVENT_LOOP_LAG.observe(max(0.0, real_wake_time - expected_wake_time))
                    expected_wake_time = real_wake_time + self.interval

                    await self.collect()
                except Exception as e:
                    logger.exception("Unexpected error in Queue Monitor loop: {}", e)

        except asyncio.CancelledError:
            logger.info("Queue Monitor stopped.")
