"""周期调度模块包。

- RecurringScheduler: 基于 cron 表达式的周期任务调度器
- RetentionSweeper: 终态记录保留期清理
"""

from .recurring import RecurringScheduler, TriggerHandle
from .retention import RetentionSweeper

__all__ = ["RecurringScheduler", "RetentionSweeper", "TriggerHandle"]
