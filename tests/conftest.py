"""Pytest 配置和共享 fixtures。"""
# ruff: noqa: E402

import sys
from pathlib import Path

# Add the project root to sys.path so `from src...` works (src is a package)
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import asyncio
from collections.abc import Callable
from typing import Any

import fakeredis
import pytest
from fakeredis.aioredis import FakeRedis

from src.core import Config, Container
from src.core.errors import UpstreamError
from src.taskqueue import Producer

QUEUE = "test"

# ==================== 辅助类与函数 ====================


class StubExtractor:
    """测试用抽取服务：记录调用，按需失败或延迟。"""

    def __init__(self, *, fail_times: int = 0, delay: float = 0.0, result: Any = None):
        self.fail_times = fail_times
        self.delay = delay
        self.result = {"ok": True} if result is None else result
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def extract(self, task):
        self.calls.append(task.task_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_times < 0 or len(self.calls) <= self.fail_times:
                raise UpstreamError("worker responded with status 500", status=500)
            return self.result
        finally:
            self.active -= 1


async def wait_until(predicate: Callable[[], Any], timeout: float = 3.0, interval: float = 0.01) -> None:
    """轮询等待条件成立（支持协程条件），超时则断言失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = predicate()
        if asyncio.iscoroutine(value):
            value = await value
        if value:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# ==================== Fixtures ====================


@pytest.fixture
def fake_server():
    """每个测试独立的内存 Redis 服务端"""
    return fakeredis.FakeServer()


@pytest.fixture
def make_redis(fake_server):
    """创建连接到同一个内存服务端的 Redis 客户端，用于模拟多进程"""

    def _make() -> FakeRedis:
        return FakeRedis(server=fake_server, decode_responses=True)

    return _make


@pytest.fixture
def redis_client(make_redis):
    return make_redis()


@pytest.fixture
def config():
    """返回一个测试用配置"""
    return Config(
        queue={"name": QUEUE, "field_expiry": False},
        consumer={"poll_interval_seconds": 0.01, "max_backoff_seconds": 0.05},
        monitor={"enabled": False},
    )


@pytest.fixture
def make_container(config, make_redis):
    """返回已注入内存 Redis 的容器工厂（不调用 setup）"""

    def _make() -> Container:
        container = Container(config=config)
        container.redis_client = make_redis()
        return container

    return _make


@pytest.fixture
def container(make_container):
    return make_container()


@pytest.fixture
def producer(container, config):
    return Producer(container.redis_client, retention_seconds=config.retention_seconds, field_expiry=False)


@pytest.fixture
def make_extractor():
    """返回测试用抽取服务类"""
    return StubExtractor


@pytest.fixture
def until():
    """返回轮询等待工具"""
    return wait_until
