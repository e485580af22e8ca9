"""分布式锁管理器模块。

周期任务在多个进程中同时加载时，同一次 cron 触发只允许一个进程投递任务。
锁通过 Redis ``SET NX EX`` 实现，不主动释放，过期即失效。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import redis.asyncio as redis


class LockManager(Protocol):
    """锁管理器协议。"""

    async def acquire(self, key: str, ttl: int = 120) -> bool:
        """尝试获取锁。

        Args:
            key: 锁的唯一标识键。
            ttl: 锁的过期时间（秒），默认 120 秒。

        Returns:
            是否成功获取锁。
        """
        ...


class RedisLockManager:
    """基于 Redis ``SET NX`` 的分布式锁管理器。"""

    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    async def acquire(self, key: str, ttl: int = 120) -> bool:
        return bool(await self._redis.set(key, "1", ex=ttl, nx=True))
