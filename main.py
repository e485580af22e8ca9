"""爬虫调度核心主入口模块。

该模块提供三种运行角色：
1. all: 周期调度器 + HTTP 控制面 + 消费者池，单进程运行全部组件
2. api: 周期调度器 + HTTP 控制面，只负责接收请求与投递任务
3. consumer: 只运行消费者池，从共享存储领取任务并派发给抽取服务

多个进程通过同一个 Redis 共享队列状态；统一入口 main(role) 根据角色启动相应组件。
"""

import asyncio
import logging
import platform
import signal
from typing import Literal

from src.api import ControlServer
from src.core import QueueMonitor, initialize_application
from src.scheduler import RecurringScheduler
from src.taskqueue import ConsumerPool, ExtractionClient, Producer
from src.utils import setup_logging

# 统一日志配置（可用环境变量 LOG_LEVEL 覆盖级别）
setup_logging()
log = logging.getLogger("main")

type Role = Literal["all", "api", "consumer"]


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    if platform.system() == "Windows":
        return
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)


async def main(role: Role = "all"):
    """统一入口，根据角色启动应用。

    启动顺序：周期调度器先完成触发句柄的恢复，HTTP 控制面再开始接受请求。
    关闭顺序：HTTP 控制面 -> 消费者池（等待在途任务）-> 调度器 -> 容器资源。
    """
    container = await initialize_application()
    config = container.config
    if container.redis_client is None or container.http_session is None:
        raise RuntimeError("Container is not set up properly.")

    producer = Producer(
        container.redis_client,
        retention_seconds=config.retention_seconds,
        field_expiry=config.field_expiry,
    )

    consumer: ConsumerPool | None = None
    scheduler: RecurringScheduler | None = None
    server: ControlServer | None = None
    tasks: list[asyncio.Task] = []
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    try:
        log.info(f"Starting application with role '{role}'.")

        if role in ("all", "consumer") and config.consumer_enabled:
            extraction = ExtractionClient(
                container.http_session,
                config.extraction_url,
                timeout=config.request_timeout_seconds,
            )
            consumer = ConsumerPool(
                producer,
                extraction,
                queue_name=config.queue_name,
                max_concurrent=config.max_concurrent,
                poll_interval=config.poll_interval_seconds,
                max_retries=config.max_retries,
                max_backoff=config.max_backoff_seconds,
            )
            consumer.start()

        if role in ("all", "api"):
            scheduler = RecurringScheduler(producer, container)
            if config.scheduler_enabled:
                await scheduler.initialize()
            server = ControlServer(
                scheduler,
                host=config.server_host,
                port=config.server_port,
                consumer=consumer,
            )
            await server.start()

        if config.monitor_enabled:
            monitor = QueueMonitor(producer, config.queue_name, interval=config.monitor_interval_seconds)
            tasks.append(asyncio.create_task(monitor.run(), name="monitor"))

        await stop_event.wait()
        log.info("Shutdown signal received.")

    except asyncio.CancelledError:
        log.info(f"Received cancellation with role '{role}'.")
        raise

    except Exception as e:
        log.exception(f"Application failed to start or run: {e}")

    finally:
        log.info("Shutting down application...")

        if server is not None:
            await server.stop()

        if consumer is not None:
            consumer.stop()
            await consumer.wait_closed()

        for t in tasks:
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if scheduler is not None:
            await scheduler.disconnect()

        await container.teardown()


def setup_event_loop():
    if platform.system() != "Windows":
        try:
            import uvloop  # type: ignore

            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

        except ImportError:
            # 非关键依赖，降低为 warning，避免冗长堆栈
            log.warning("uvloop not installed; using default asyncio event loop.")

        except Exception as e:
            log.warning(f"Failed to set up uvloop; using default asyncio event loop. Error: {e}")

    else:
        log.info("Running on Windows, using the default ProactorEventLoop.")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Crawl Scheduler Core")
    parser.add_argument(
        "--role",
        choices=["all", "api", "consumer"],
        default="all",
        help=("Process role: 'api' for scheduler and HTTP surface, 'consumer' for the consumer pool, 'all' for both."),
    )
    args = parser.parse_args()

    setup_event_loop()

    try:
        asyncio.run(main(args.role))
    except KeyboardInterrupt:
        log.info("Application stopped by user.")
