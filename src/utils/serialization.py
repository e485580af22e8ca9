"""序列化与时间工具。

任务在共享存储中以 JSON 字符串形式保存；有序集合按成员字符串去重，
因此同一个任务对象必须总是序列化为完全相同的字符串。
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import orjson


def dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(moment: datetime) -> str:
    """将时间格式化为带时区的 ISO-8601 字符串（朴素时间视为 UTC）。"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """解析 ISO-8601 时间戳，接受 ``Z`` 结尾；无法解析时返回 None。"""
    if not isinstance(value, str) or not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment
