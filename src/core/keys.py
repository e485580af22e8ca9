"""共享存储键名约定。

队列状态与周期任务定义在 Redis 中的逻辑布局：
- ``<queue>:priority``   有序集合，成员为序列化的任务，分值为优先级
- ``<queue>:pending``    集合，等待中的任务 id
- ``<queue>:processing`` 集合，处理中的任务 id
- ``<queue>:completed``  哈希，任务 id -> 完成记录
- ``<queue>:failed``     哈希，任务 id -> 失败记录
- ``scheduler:tasks``    哈希，周期任务 id -> 周期任务定义
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

SCHEDULER_TASKS_KEY = "scheduler:tasks"
FIRING_LOCK_PREFIX = "scheduler:firing"


@dataclasses.dataclass(slots=True, frozen=True)
class QueueKeys:
    """单个命名队列的全部键名。"""

    name: str

    @property
    def priority(self) -> str:
        return f"{self.name}:priority"

    @property
    def pending(self) -> str:
        return f"{self.name}:pending"

    @property
    def processing(self) -> str:
        return f"{self.name}:processing"

    @property
    def completed(self) -> str:
        return f"{self.name}:completed"

    @property
    def failed(self) -> str:
        return f"{self.name}:failed"

    @property
    def transient(self) -> tuple[str, str, str]:
        """可被 reset 清空的瞬态键。"""
        return (self.priority, self.pending, self.processing)


def firing_lock_key(trigger_id: str, fire_time: datetime) -> str:
    """单次触发的去重锁键，精确到分钟。"""
    return f"{FIRING_LOCK_PREFIX}:{trigger_id}:{fire_time:%Y%m%d%H%M}"
