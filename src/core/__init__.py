"""核心模块包。

包含调度核心的基础组件：
- Config: 应用配置
- Container: 依赖注入容器，管理所有外部资源
- QueueMonitor: 队列指标采集
- initialize: 应用初始化逻辑
"""

from .config import Config
from .container import Container
from .initialize import initialize_application
from .monitor import QueueMonitor

__all__ = ["Config", "Container", "QueueMonitor", "initialize_application"]
