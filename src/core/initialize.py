"""项目初始化模块。

该模块包含应用程序启动时需要执行的初始化任务：加载配置并建立共享资源。
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from .config import Config
from .container import Container


async def initialize_application(**overrides: Any) -> Container:
    """初始化整个应用程序。

    1. 加载配置（config.toml、环境变量与显式覆盖项）。
    2. 创建并设置依赖注入容器（Redis 连接与 HTTP 会话）。

    Args:
        overrides: 传给 Config 的覆盖项。

    Returns:
        初始化完成的容器实例。
    """
    logger.info("Initializing application...")

    app_config = Config(**overrides)

    container = Container(config=app_config)
    await container.setup()

    logger.info("Application initialized successfully (queue='{}').", app_config.queue_name)
    return container
