"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from hitl_engine.config import AppConfig, LogLevel, get_config, load_config, reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:

    def test_defaults(self):
        config = AppConfig()

        assert config.max_node_visits == 50
        assert config.enable_resume_worker
        assert config.task_service_url is None
        assert config.get_uvicorn_config()["log_level"] == "info"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("HITL_ENGINE_PORT", "9001")
        monkeypatch.setenv("HITL_ENGINE_ENABLE_RESUME_WORKER", "false")
        monkeypatch.setenv("HITL_ENGINE_DEFAULT_RETRY_DELAY", "0.25")
        monkeypatch.setenv("HITL_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("HITL_ENGINE_CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("HITL_ENGINE_TASK_SERVICE_URL", "http://tasks.test")

        config = AppConfig.from_env()

        assert config.port == 9001
        assert not config.enable_resume_worker
        assert config.default_retry_delay == 0.25
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.task_service_url == "http://tasks.test"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(database_url="mongodb://localhost/db")
        with pytest.raises(ValidationError):
            AppConfig(max_node_visits=0)
        with pytest.raises(ValidationError):
            AppConfig(default_retry_delay=-1)

    def test_load_config_reads_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / "engine.env"
        env_file.write_text("HITL_ENGINE_MAX_NODE_VISITS=7\n")
        monkeypatch.delenv("HITL_ENGINE_MAX_NODE_VISITS", raising=False)

        config = load_config(str(env_file))

        assert config.max_node_visits == 7
        assert get_config() is config
        monkeypatch.delenv("HITL_ENGINE_MAX_NODE_VISITS", raising=False)
