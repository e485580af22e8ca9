"""抽取服务客户端。

调度核心只在边界上与抽取服务交互：``POST <base>/extract``，请求体为
``{url, depth, taskId}``，2xx 的响应体会原样写入完成记录。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import aiohttp

from ..core.errors import UpstreamError

if TYPE_CHECKING:
    from ..models import Task


class ExtractionClient:
    """抽取服务 HTTP 客户端。

    Attributes:
        session: 共享的 aiohttp 客户端会话
        base_url: 抽取服务基础地址
        timeout: 单次请求的总超时
    """

    def __init__(self, session: aiohttp.ClientSession, base_url: str, timeout: float = 60.0):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def extract(self, task: Task) -> Any:
        """派发任务到抽取服务。

        Returns:
            抽取服务返回的 JSON 响应体；响应体不是 JSON 时返回文本。

        Raises:
            UpstreamError: 网络错误、超时或非 2xx 响应。
        """
        payload = {"url": task.url, "depth": task.depth, "taskId": task.task_id}
        try:
            async with self.session.post(f"{self.base_url}/extract", json=payload, timeout=self.timeout) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    raise UpstreamError(
                        f"Extraction worker responded with status {resp.status}: {body[:200]}",
                        status=resp.status,
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError:
                    return await resp.text()
        except TimeoutError as e:
            raise UpstreamError(f"Extraction request timed out after {self.timeout.total}s") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Extraction request failed: {e}") from e
