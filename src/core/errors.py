"""异常定义模块。

将调度核心可能出现的错误划分为三类：
- TaskValidationError: 请求本身不合法，同步拒绝且没有任何副作用
- UpstreamError: 抽取服务调用失败，只驱动重试/失败状态机
- StoreError: 共享存储不可用，直接调用路径上抛给调用方
"""

from __future__ import annotations


class CrawlSchedulerError(Exception):
    """调度核心的异常基类。"""


class TaskValidationError(CrawlSchedulerError):
    """请求参数校验失败（缺少 url、cron 表达式非法、未知控制指令等）。"""


class UpstreamError(CrawlSchedulerError):
    """抽取服务调用失败。

    Attributes:
        status: HTTP 状态码；网络错误或超时时为 None。
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class StoreError(CrawlSchedulerError):
    """共享存储（Redis）操作失败。"""
