"""依赖注入容器模块。

该模块实现了应用程序的依赖注入容器，负责统一管理和初始化
各种外部资源，包括 Redis 客户端和访问抽取服务用的 HTTP 会话。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiohttp
import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

if TYPE_CHECKING:
    from .config import Config


class Container:
    """依赖注入容器。

    负责管理应用程序的所有外部依赖，提供统一的资源初始化和清理接口。

    Attributes:
        config (Config): 应用程序配置对象
        redis_client (redis.Redis): Redis异步客户端（共享存储）
        http_session (aiohttp.ClientSession): 访问抽取服务的HTTP会话
    """

    def __init__(self, config: Config):
        """初始化容器。

        Args:
            config: 应用程序的配置对象。
        """
        self.config = config

        self.redis_client: redis.Redis | None = None
        self.http_session: aiohttp.ClientSession | None = None

    async def setup(self):
        """异步初始化容器资源。

        依次初始化以下资源：
        1. Redis异步客户端连接（PING 失败时指数退避重试）
        2. aiohttp 客户端会话

        如果任何步骤失败，会自动调用teardown()清理已初始化的资源。

        Raises:
            Exception: 当资源初始化失败时抛出异常。
        """
        logger.info("Initializing container resources...")
        try:
            self.redis_client = redis.from_url(self.config.redis_url, decode_responses=True)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(5),
                wait=wait_exponential(multiplier=0.5, max=8),
                retry=retry_if_exception_type((RedisError, OSError)),
                reraise=True,
            ):
                with attempt:
                    await self.redis_client.ping()  # type: ignore
            logger.info("Redis client connected successfully.")

            self.http_session = aiohttp.ClientSession()
            logger.info("HTTP client session opened.")

            logger.info("Container resources initialized successfully.")

        except Exception as e:
            logger.exception(f"Failed to initialize container resources: {e}")
            await self.teardown()
            raise

    async def close_redis(self) -> None:
        """释放共享存储连接（幂等）。"""
        if self.redis_client is not None:
            client, self.redis_client = self.redis_client, None
            await client.aclose()
            logger.info("Redis client closed.")

    async def teardown(self):
        """异步关闭并清理所有资源。

        该方法是幂等的，可以安全地多次调用。
        """
        logger.info("Tearing down container resources...")

        if self.http_session is not None:
            session, self.http_session = self.http_session, None
            await session.close()
            logger.info("HTTP client session closed.")

        await self.close_redis()

        logger.info("Container resources torn down successfully.")
