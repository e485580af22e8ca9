"""配置加载测试。"""

from __future__ import annotations

import pytest

from src.core import Config


def test_defaults():
    config = Config()

    assert config.queue_name == "crawler"
    assert config.retention_seconds == 7 * 24 * 60 * 60
    assert config.max_retries == 3
    assert config.max_concurrent == 5
    assert config.request_timeout_seconds == 60
    assert config.default_depth == 2
    assert config.default_priority == "normal"
    assert config.cleanup_cron == "0 0 * * *"
    assert config.server_port == 3005
    assert config.redis_url == "redis://localhost:6379/0"


def test_overrides_and_env(monkeypatch):
    monkeypatch.setenv("CONSUMER__MAX_CONCURRENT", "9")
    monkeypatch.setenv("REDIS__HOST", "store")

    config = Config(queue={"name": "jobs"}, consumer={"extraction_url": "http://worker:3001/"})

    assert config.queue_name == "jobs"
    assert config.extraction_url == "http://worker:3001"
    assert config.redis_url.startswith("redis://store:6379")


def test_redis_url_with_password():
    config = Config(redis={"host": "h", "password": "p@ss", "db": 2})

    assert config.redis_url == "redis://:p%40ss@h:6379/2"


@pytest.mark.parametrize(
    "overrides",
    [
        {"scheduler": {"cleanup_cron": "daily"}},
        {"consumer": {"max_concurrent": 0}},
        {"queue": {"retention_days": 0}},
        {"scheduler": {"default_priority": "urgent"}},
    ],
)
def test_invalid_config_raises(overrides):
    with pytest.raises(ValueError):
        Config(**overrides)
