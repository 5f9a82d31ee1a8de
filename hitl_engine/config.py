"""Configuration for the HITL workflow engine service.

Settings come from ``HITL_ENGINE_<FIELD NAME>`` environment variables, after
an optional ``.env`` file has been loaded into the environment.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "HITL_ENGINE_"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application
    app_name: str = Field(default="HITL Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS allowed origins")

    # Document store
    database_url: str = Field(default="sqlite:///./hitl_engine.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Traversal
    default_max_retries: int = Field(
        default=0, ge=0,
        description="Retries per node when the node config does not set max_retries"
    )
    default_retry_delay: float = Field(
        default=1.0, ge=0,
        description="Fixed delay in seconds between retries of a failing executor"
    )
    max_node_visits: int = Field(
        default=50, ge=1,
        description="Maximum times a single node may be entered during one run"
    )

    # Resume queue
    enable_resume_worker: bool = Field(default=True, description="Start the resume worker with the app")
    resume_poll_interval: float = Field(default=0.5, ge=0, description="Seconds between resume queue polls")
    resume_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per resume job")
    resume_stale_timeout: float = Field(
        default=300.0, ge=0,
        description="Seconds after which a processing job is considered abandoned"
    )

    # Task service
    task_service_url: Optional[str] = Field(default=None, description="External task service base URL")
    task_service_timeout: float = Field(default=10.0, ge=0, description="Task service request timeout")
    callback_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL the task service calls back to complete a task"
    )

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Root log level")
    log_format: Optional[str] = Field(default=None, description="Plain-text log format")
    log_file: Optional[str] = Field(default=None, description="Also log to this rotated file")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Log file rotation size in bytes")
    log_backup_count: int = Field(default=5, description="Rotated log files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log records")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        scheme = v.split('://')[0].split('+')[0].lower()
        if scheme not in ('sqlite', 'postgresql', 'mysql'):
            raise ValueError(f"Unsupported database scheme: '{scheme}'")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> 'AppConfig':
        """Read every field from ``<prefix><FIELD>``; unset variables keep the default."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if name == "cors_origins":
                values[name] = [origin.strip() for origin in raw.split(",") if origin.strip()]
            else:
                values[name] = raw
        return cls.model_validate(values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then rebuild the global configuration."""
    global _config

    env_file = config_file or ".env"
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_testing_config(database_url: str = "sqlite:///:memory:") -> AppConfig:
    """Fast retries, a low loop limit and no background worker."""
    return AppConfig(
        debug=True,
        database_url=database_url,
        log_level=LogLevel.WARNING,
        default_retry_delay=0.0,
        max_node_visits=20,
        enable_resume_worker=False,
        resume_poll_interval=0.01,
    )
