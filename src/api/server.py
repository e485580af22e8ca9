"""HTTP 控制面服务器。

提供调度核心对外的 JSON 接口：
- POST /crawl: 创建一次性或周期任务
- GET /status: 调度器、队列与消费者状态
- POST /control: pause / resume / reset
- GET /health: 存活检查
- GET /tasks, GET /tasks/{taskId}, DELETE /tasks/{taskId}: 任务查询与取消
- GET /metrics: Prometheus 指标

错误统一以 ``{"error": ..., "message": ...}`` 返回：参数错误 400，存储不可用 503。
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from aiohttp import web
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.errors import StoreError, TaskValidationError
from ..utils.serialization import dumps, loads

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..scheduler import RecurringScheduler
    from ..taskqueue import ConsumerPool

    Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=dumps)


def _error(error: str, message: str, status: int) -> web.Response:
    return _json({"error": error, "message": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except TaskValidationError as e:
        return _error("validation_error", str(e), 400)
    except StoreError as e:
        return _error("store_unavailable", str(e), 503)
    except Exception as e:
        logger.exception("Unhandled error on {} {}: {}", request.method, request.path, e)
        return _error("internal_error", str(e) or type(e).__name__, 500)


async def _read_body(request: web.Request) -> dict[str, Any]:
    raw = await request.read()
    if not raw:
        return {}
    try:
        body = loads(raw)
    except ValueError as e:
        raise TaskValidationError("Request body is not valid JSON") from e
    if not isinstance(body, dict):
        raise TaskValidationError("Request body must be a JSON object")
    return body


class ControlServer:
    """调度核心的 HTTP 控制面。

    Attributes:
        scheduler: 周期任务调度器。
        consumer: 同进程运行的消费者池（可选），其统计信息会出现在 /status 中。
    """

    def __init__(
        self,
        scheduler: RecurringScheduler,
        *,
        host: str = "0.0.0.0",
        port: int = 3005,
        consumer: ConsumerPool | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.consumer = consumer
        self._host = host
        self._port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._server_lock = asyncio.Lock()
        self._started = False
        self._bound_port: int | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.add_routes(
            [
                web.post("/crawl", self._crawl),
                web.get("/status", self._status),
                web.post("/control", self._control),
                web.get("/health", self._health),
                web.get("/tasks", self._list_tasks),
                web.get("/tasks/{taskId}", self._get_task),
                web.delete("/tasks/{taskId}", self._cancel_task),
                web.get("/metrics", self._metrics),
            ]
        )
        return app

    async def _crawl(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        task_id = await self.scheduler.schedule_task(
            body.get("url"),
            priority=body.get("priority"),
            depth=body.get("depth"),
            schedule=body.get("schedule"),
        )
        return _json({"taskId": task_id}, status=201)

    async def _status(self, request: web.Request) -> web.Response:
        status = await self.scheduler.get_status()
        if self.consumer is not None:
            status["consumer"] = self.consumer.stats()
        return _json(status)

    async def _control(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        action = body.get("action")
        if action == "pause":
            result = await self.scheduler.pause()
        elif action == "resume":
            result = await self.scheduler.resume()
        elif action == "reset":
            result = await self.scheduler.reset()
        else:
            raise TaskValidationError(f"Unknown control action: {action!r}")
        logger.info("Control action applied: {}", action)
        return _json(result)

    async def _health(self, request: web.Request) -> web.Response:
        return _json({"status": "ok"})

    async def _list_tasks(self, request: web.Request) -> web.Response:
        return _json(await self.scheduler.get_tasks())

    async def _get_task(self, request: web.Request) -> web.Response:
        task_id = request.match_info["taskId"]
        found = await self.scheduler.get_task(task_id)
        if found["state"] == "unknown":
            return _error("not_found", f"Task {task_id} not found", 404)
        return _json(found)

    async def _cancel_task(self, request: web.Request) -> web.Response:
        task_id = request.match_info["taskId"]
        await self.scheduler.cancel_task(task_id)
        return _json({"cancelled": True, "taskId": task_id})

    async def _metrics(self, request: web.Request) -> web.Response:
        resp = web.Response(body=generate_latest())
        resp.headers["Content-Type"] = CONTENT_TYPE_LATEST
        return resp

    async def start(self) -> None:
        if self._started:
            return
        async with self._server_lock:
            if self._started:
                return
            self._app = self.build_app()
            self._runner = web.AppRunner(self._app, access_log=None)
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, self._host, self._port)
            await self._site.start()
            # 记录实际绑定端口（支持端口为 0 的场景）
            addrs = self._runner.addresses
            self._bound_port = int(addrs[0][1]) if addrs else None
            self._started = True
            logger.info("Control server listening on http://{}:{}", self._host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            logger.info("Control server stopped.")
        self._app = None
        self._runner = None
        self._site = None
        self._started = False

    @property
    def port(self) -> int:
        return self._bound_port or self._port
