"""应用程序配置管理模块。

该模块负责从TOML配置文件中加载应用程序的各项配置，
包括Redis连接、队列参数、消费者并发、调度器和HTTP控制面等。
支持通过环境变量覆盖配置（例如 REDIS__HOST、CONSUMER__MAX_CONCURRENT）。
"""

import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from pydantic import (
    BaseModel,
    Field,
    RedisDsn,
    ValidationError,
    computed_field,
    field_validator,
)
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class RedisConfig(BaseModel):
    """Redis配置模型"""

    host: str = "localhost"
    port: int = 6379
    username: str = ""
    password: str = ""
    db: int = 0


class QueueConfig(BaseModel):
    """任务队列配置模型"""

    name: str = Field("crawler", min_length=1)
    retention_days: int = Field(7, gt=0)
    max_retries: int = Field(3, ge=0)
    field_expiry: bool = True


class ConsumerConfig(BaseModel):
    """消费者池配置模型"""

    enabled: bool = True
    max_concurrent: int = Field(5, gt=0)
    poll_interval_seconds: float = Field(1.0, gt=0)
    max_backoff_seconds: float = Field(30.0, gt=0)
    extraction_url: str = "http://data-extraction:3001"
    request_timeout_seconds: float = Field(60.0, gt=0)


class SchedulerConfig(BaseModel):
    """周期调度器配置模型"""

    enabled: bool = True
    timezone: str = "UTC"
    cleanup_cron: str = "0 0 * * *"
    default_depth: int = Field(2, gt=0)
    default_priority: Literal["high", "medium", "normal"] = "normal"

    @field_validator("cleanup_cron")
    @classmethod
    def check_cleanup_cron(cls, value: str) -> str:
        from apscheduler.triggers.cron import CronTrigger

        CronTrigger.from_crontab(value)
        return value


class ServerConfig(BaseModel):
    """HTTP 控制面配置模型"""

    host: str = "0.0.0.0"
    port: int = Field(3005, ge=0, le=65535)


class MonitorConfig(BaseModel):
    """队列监控配置模型"""

    enabled: bool = True
    interval_seconds: float = Field(5.0, gt=0)


class PydanticConfig(BaseSettings):
    """Pydantic总配置模型"""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue: QueueConfig = Field(default_factory=lambda: QueueConfig(name="crawler", retention_days=7, max_retries=3))
    consumer: ConsumerConfig = Field(
        default_factory=lambda: ConsumerConfig(max_concurrent=5, poll_interval_seconds=1.0, request_timeout_seconds=60)
    )
    scheduler: SchedulerConfig = Field(default_factory=lambda: SchedulerConfig(default_depth=2))
    server: ServerConfig = Field(default_factory=lambda: ServerConfig(port=3005))
    monitor: MonitorConfig = Field(default_factory=lambda: MonitorConfig(interval_seconds=5.0))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @computed_field
    @property
    def redis_url(self) -> RedisDsn:
        """生成Redis连接URL"""
        if self.redis.username and self.redis.password:
            return RedisDsn(
                f"redis://{quote_plus(self.redis.username)}:{quote_plus(self.redis.password)}"
                f"@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        if self.redis.password:
            return RedisDsn(
                f"redis://:{quote_plus(self.redis.password)}@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        return RedisDsn(f"redis://{self.redis.host}:{self.redis.port}/{self.redis.db}")


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """TOML 配置文件加载源"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        config_file = Path(__file__).resolve().parent.parent.parent / "config.toml"
        if not config_file.exists():
            return {}
        try:
            with config_file.open("rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return {}


class Config:
    """应用程序配置类。

    负责加载和管理应用程序的所有配置项，包括：
    - Redis连接配置
    - 队列名称、重试上限与保留期
    - 消费者并发与抽取服务地址
    - 调度器与HTTP控制面配置

    Attributes:
        pydantic_config (PydanticConfig): Pydantic应用配置模型
    """

    pydantic_config: PydanticConfig

    def __init__(self, **overrides: Any):
        """初始化配置对象。

        配置加载优先级：
        1. 显式传入的覆盖项（主要用于测试）
        2. 环境变量 (例如 REDIS__HOST)
        3. config.toml 配置文件

        Raises:
            ValueError: 配置校验失败时抛出。
        """
        try:
            self.pydantic_config = PydanticConfig(**overrides)
        except ValidationError as e:
            raise ValueError(f"配置验证失败: {e}") from e

    @property
    def redis_url(self) -> str:
        """获取Redis连接URL。"""
        return str(self.pydantic_config.redis_url)

    @property
    def queue_name(self) -> str:
        """获取任务队列名称。"""
        return self.pydantic_config.queue.name

    @property
    def retention_days(self) -> int:
        """获取终态记录保留天数。"""
        return self.pydantic_config.queue.retention_days

    @property
    def retention_seconds(self) -> int:
        return self.retention_days * 24 * 60 * 60

    @property
    def max_retries(self) -> int:
        """获取任务最大重试次数。"""
        return self.pydantic_config.queue.max_retries

    @property
    def field_expiry(self) -> bool:
        """获取是否对终态记录设置字段级过期（需要 Redis 7.4+）。"""
        return self.pydantic_config.queue.field_expiry

    @property
    def consumer_enabled(self) -> bool:
        return self.pydantic_config.consumer.enabled

    @property
    def max_concurrent(self) -> int:
        """获取消费者最大并发任务数。"""
        return self.pydantic_config.consumer.max_concurrent

    @property
    def poll_interval_seconds(self) -> float:
        """获取轮询间隔（秒）。"""
        return self.pydantic_config.consumer.poll_interval_seconds

    @property
    def max_backoff_seconds(self) -> float:
        """获取轮询出错时的最大退避时间（秒）。"""
        return self.pydantic_config.consumer.max_backoff_seconds

    @property
    def extraction_url(self) -> str:
        """获取内容抽取服务的基础地址。"""
        return self.pydantic_config.consumer.extraction_url.rstrip("/")

    @property
    def request_timeout_seconds(self) -> float:
        """获取抽取请求超时时间（秒）。"""
        return self.pydantic_config.consumer.request_timeout_seconds

    @property
    def scheduler_enabled(self) -> bool:
        return self.pydantic_config.scheduler.enabled

    @property
    def scheduler_timezone(self) -> str:
        """获取 cron 表达式使用的时区。"""
        return self.pydantic_config.scheduler.timezone

    @property
    def cleanup_cron(self) -> str:
        """获取过期记录清理任务的 cron 表达式。"""
        return self.pydantic_config.scheduler.cleanup_cron

    @property
    def default_depth(self) -> int:
        """获取默认抓取深度。"""
        return self.pydantic_config.scheduler.default_depth

    @property
    def default_priority(self) -> Literal["high", "medium", "normal"]:
        """获取默认优先级。"""
        return self.pydantic_config.scheduler.default_priority

    @property
    def server_host(self) -> str:
        return self.pydantic_config.server.host

    @property
    def server_port(self) -> int:
        return self.pydantic_config.server.port

    @property
    def monitor_enabled(self) -> bool:
        return self.pydantic_config.monitor.enabled

    @property
    def monitor_interval_seconds(self) -> float:
        """获取队列监控采样间隔（秒）。"""
        return self.pydantic_config.monitor.interval_seconds
