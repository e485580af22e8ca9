"""数据模型包。

包含调度核心流转的两种显式变体类型：
- Task: 一次性抓取任务
- Trigger: 周期任务定义
"""

from .tasks import PriorityClass, Rank, Task, Trigger, new_task_id, normalize_priority, rank_for

__all__ = ["PriorityClass", "Rank", "Task", "Trigger", "new_task_id", "normalize_priority", "rank_for"]
