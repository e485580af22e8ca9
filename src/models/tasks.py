"""任务与周期任务模型。

定义了调度核心中流转的两种数据：
- Task: 一次抓取工作单元，从等待状态流转到完成或失败
- Trigger: 持久化的周期规则，每次 cron 触发时生成一个新的 Task

两者只通过 Task.scheduled_task_id 这个查找键关联，互不持有。
存储中的字段名沿用 camelCase，便于共享存储的其他服务直接读取。
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Mapping
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Literal

from ..utils.serialization import isoformat, utcnow

if TYPE_CHECKING:
    from datetime import datetime

type PriorityClass = Literal["high", "medium", "normal"]


class Rank(IntEnum):
    """任务优先级分值，数值越大越先被领取。

    重试任务总是以 NORMAL 分值重新入队，与其原始优先级无关。
    """

    NORMAL = 1
    MEDIUM = 2
    HIGH = 3


_RANKS: dict[str, Rank] = {"high": Rank.HIGH, "medium": Rank.MEDIUM}


def rank_for(priority: Any) -> Rank:
    """优先级名称到分值的映射，未知、缺省或非字符串一律视为 normal。"""
    if not isinstance(priority, str):
        return Rank.NORMAL
    return _RANKS.get(priority.lower(), Rank.NORMAL)


def normalize_priority(priority: Any) -> PriorityClass:
    return rank_for(priority).name.lower()  # type: ignore[return-value]


def new_task_id() -> str:
    return str(uuid.uuid4())


_TASK_FIELDS = {
    "taskId": "task_id",
    "url": "url",
    "depth": "depth",
    "priority": "priority",
    "createdAt": "created_at",
    "retryCount": "retry_count",
    "lastError": "last_error",
    "lastRetryAt": "last_retry_at",
    "scheduledTaskId": "scheduled_task_id",
}

_TRIGGER_FIELDS = {
    "taskId": "task_id",
    "url": "url",
    "depth": "depth",
    "priority": "priority",
    "schedule": "schedule",
    "createdAt": "created_at",
    "lastRun": "last_run",
}


@dataclasses.dataclass(slots=True, frozen=True)
class Task:
    """一次抓取任务。

    Attributes:
        task_id: 全局唯一且不可变的任务标识
        url: 待抓取的地址
        depth: 抓取深度
        priority: 优先级名称（high / medium / normal）
        created_at: 创建时间（ISO-8601）
        retry_count: 已失败次数
        last_error: 最近一次失败原因
        last_retry_at: 最近一次重试入队时间
        scheduled_task_id: 产生该任务的周期任务 id，仅作查找键
        extra: 存储中出现但本模型不认识的字段，原样保留
    """

    task_id: str
    url: str
    depth: int = 2
    priority: PriorityClass = "normal"
    created_at: str = ""
    retry_count: int = 0
    last_error: str | None = None
    last_retry_at: str | None = None
    scheduled_task_id: str | None = None
    extra: dict[str, Any] = dataclasses.field(default_factory=dict, compare=False, hash=False)

    @property
    def rank(self) -> Rank:
        return rank_for(self.priority)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            taskId=self.task_id,
            url=self.url,
            depth=self.depth,
            priority=self.priority,
            createdAt=self.created_at,
            retryCount=self.retry_count,
        )
        if self.last_error is not None:
            data["lastError"] = self.last_error
        if self.last_retry_at is not None:
            data["lastRetryAt"] = self.last_retry_at
        if self.scheduled_task_id is not None:
            data["scheduledTaskId"] = self.scheduled_task_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        if not isinstance(data, Mapping):
            raise ValueError("task record must be an object")
        known = {attr: data[key] for key, attr in _TASK_FIELDS.items() if data.get(key) is not None}
        extra = {k: v for k, v in data.items() if k not in _TASK_FIELDS}
        if "task_id" not in known or "url" not in known:
            raise ValueError("task record requires taskId and url")
        known["priority"] = normalize_priority(known.get("priority"))
        known["depth"] = int(known.get("depth", 2))
        known["retry_count"] = int(known.get("retry_count", 0))
        return cls(**known, extra=extra)

    @classmethod
    def create(
        cls,
        url: str,
        *,
        depth: int = 2,
        priority: str | None = None,
        task_id: str | None = None,
        scheduled_task_id: str | None = None,
        now: datetime | None = None,
    ) -> Task:
        return cls(
            task_id=task_id or new_task_id(),
            url=url,
            depth=depth,
            priority=normalize_priority(priority),
            created_at=isoformat(now or utcnow()),
            scheduled_task_id=scheduled_task_id,
        )

    def with_retry(self, error: str, now: datetime | None = None) -> Task:
        """返回一次失败后的任务副本：重试次数加一，记录错误与时间。"""
        return dataclasses.replace(
            self,
            retry_count=self.retry_count + 1,
            last_error=error,
            last_retry_at=isoformat(now or utcnow()),
        )

    def completed_record(self, result: Any, now: datetime | None = None) -> dict[str, Any]:
        record = self.to_dict()
        record["completedAt"] = isoformat(now or utcnow())
        record["result"] = result
        return record

    def failed_record(self, error: str, now: datetime | None = None) -> dict[str, Any]:
        record = self.to_dict()
        record["failedAt"] = isoformat(now or utcnow())
        record["error"] = error
        return record


@dataclasses.dataclass(slots=True, frozen=True)
class Trigger:
    """周期任务（持久化的周期生产规则）。

    Attributes:
        task_id: 周期任务自身的标识
        url: 每次触发时抓取的地址
        depth: 抓取深度
        priority: 生成任务的优先级
        schedule: cron 表达式
        created_at: 创建时间
        last_run: 最近一次触发时间
    """

    task_id: str
    url: str
    schedule: str
    depth: int = 2
    priority: PriorityClass = "normal"
    created_at: str = ""
    last_run: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "url": self.url,
            "depth": self.depth,
            "priority": self.priority,
            "schedule": self.schedule,
            "createdAt": self.created_at,
        }
        if self.last_run is not None:
            data["lastRun"] = self.last_run
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Trigger:
        if not isinstance(data, Mapping):
            raise ValueError("trigger record must be an object")
        known = {attr: data[key] for key, attr in _TRIGGER_FIELDS.items() if data.get(key) is not None}
        if "task_id" not in known or "url" not in known or not known.get("schedule"):
            raise ValueError("trigger record requires taskId, url and schedule")
        known["priority"] = normalize_priority(known.get("priority"))
        known["depth"] = int(known.get("depth", 2))
        return cls(**known)

    def spawn(self, now: datetime | None = None) -> Task:
        """为一次触发生成新的一次性任务。"""
        moment = now or utcnow()
        return Task.create(
            self.url,
            depth=self.depth,
            priority=self.priority,
            task_id=f"{self.task_id}-{isoformat(moment)}",
            scheduled_task_id=self.task_id,
            now=moment,
        )

    def with_last_run(self, now: datetime | None = None) -> Trigger:
        return dataclasses.replace(self, last_run=isoformat(now or utcnow()))
