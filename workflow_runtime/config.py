"""Configuration management for the Workflow Runtime.

Settings come from ``WORKFLOW_RUNTIME_``-prefixed environment variables,
optionally seeded from a ``.env`` file. Every AppConfig field maps to the
upper-cased field name (``WORKFLOW_RUNTIME_DATABASE_URL``); lane settings use
``WORKFLOW_RUNTIME_LANE_<LANE>_<SETTING>``, for example
``WORKFLOW_RUNTIME_LANE_WORKFLOW_EXECUTION_CONCURRENCY``.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .models.core import BackoffPolicy, BackoffType, JobOptions, QueueName


ENV_PREFIX = "WORKFLOW_RUNTIME_"

SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LaneConfig(BaseModel):
    """Worker concurrency and default job options for one queue lane."""
    concurrency: int = Field(default=1, ge=1, description="Number of worker threads")
    priority: int = Field(default=0, description="Default job priority, lower served first")
    attempts: int = Field(default=3, ge=1, description="Default maximum attempts")
    backoff_type: BackoffType = Field(default=BackoffType.EXPONENTIAL)
    backoff_delay: float = Field(default=2.0, ge=0, description="Backoff base delay in seconds")
    timeout: Optional[float] = Field(default=None, gt=0, description="Default whole-job timeout")

    def default_job_options(self) -> JobOptions:
        return JobOptions(
            priority=self.priority,
            attempts=self.attempts,
            backoff=BackoffPolicy(type=self.backoff_type, delay=self.backoff_delay),
            timeout=self.timeout,
        )


def default_lanes() -> Dict[str, LaneConfig]:
    return {
        QueueName.WORKFLOW_EXECUTION.value: LaneConfig(concurrency=5, priority=10, attempts=3, timeout=3600),
        QueueName.NODE_EXECUTION.value: LaneConfig(concurrency=10, priority=0, attempts=3),
        QueueName.EMAIL_SENDING.value: LaneConfig(concurrency=5, priority=5, attempts=5),
        QueueName.WEBHOOK_PROCESSING.value: LaneConfig(concurrency=10, priority=8, attempts=3),
        QueueName.FILE_PROCESSING.value: LaneConfig(concurrency=3, priority=3, attempts=2),
        QueueName.LLM_PROCESSING.value: LaneConfig(concurrency=2, priority=7, attempts=2),
    }


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application
    app_name: str = Field(default="Workflow Runtime", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Run storage
    database_url: str = Field(default="sqlite:///./workflow_runtime.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Queue
    lanes: Dict[str, LaneConfig] = Field(
        default_factory=default_lanes,
        description="Per-lane worker concurrency and default job options"
    )
    queue_shutdown_timeout: float = Field(default=30.0, description="Seconds to wait for active jobs on shutdown")

    # Execution and connectors
    strict_condition_branching: bool = Field(
        default=False,
        description="Follow only edges whose branch label matches a condition node's result"
    )
    http_timeout: float = Field(default=30.0, gt=0, description="Timeout in seconds for api node requests")
    connector_database_url: Optional[str] = Field(
        default=None,
        description="Database that database nodes query; unset disables database nodes"
    )

    # Monitoring
    websocket_max_connections: int = Field(default=100, ge=1, description="Maximum monitor WebSocket connections")
    enable_performance_monitoring: bool = Field(default=True, description="Add request timing middleware")
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this are logged as warnings")
    health_check_timeout: float = Field(default=5.0, description="Health check timeout in seconds")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Plain-text log format; unset uses the built-in one")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Maximum log file size in bytes")
    log_backup_count: int = Field(default=5, description="Number of rotated log files to keep")

    # CORS
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")
    cors_methods: List[str] = Field(default=["GET", "POST"], description="CORS allowed methods")

    @field_validator('database_url', 'connector_database_url')
    @classmethod
    def validate_database_url(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].lower().split('+')[0]
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASE_SCHEMES)}")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('cors_origins', 'cors_methods', mode='before')
    @classmethod
    def split_comma_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @field_validator('lanes')
    @classmethod
    def fill_missing_lanes(cls, lanes):
        """Every known lane gets a configuration, falling back to defaults."""
        merged = default_lanes()
        merged.update(lanes)
        return merged

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'AppConfig':
        """
        Build a configuration from prefixed environment variables.

        Values are passed to pydantic as strings, so "true"/"1" become booleans
        and numbers are coerced; unset variables keep the field default.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "lanes":
                continue
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw

        values["lanes"] = _lanes_from_env(environ)
        return cls(**values)


def _lanes_from_env(environ) -> Dict[str, LaneConfig]:
    lanes = default_lanes()
    for name, lane in lanes.items():
        lane_prefix = f"{ENV_PREFIX}LANE_{name.upper().replace('-', '_')}_"
        overrides = {
            setting: environ[lane_prefix + setting.upper()]
            for setting in LaneConfig.model_fields
            if lane_prefix + setting.upper() in environ
        }
        if overrides:
            lanes[name] = LaneConfig(**{**lane.model_dump(), **overrides})
    return lanes


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance, loading it from the environment once."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if present) and the environment."""
    global _config

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def validate_config(config: AppConfig) -> None:
    """
    Check settings that pydantic cannot: writable directories and sane worker counts.

    Raises:
        ValueError: Listing every problem found
    """
    errors = []

    directories = []
    if config.database_url.startswith("sqlite") and ":memory:" not in config.database_url:
        directories.append(("database", os.path.dirname(config.database_url.split(":///", 1)[-1])))
    if config.log_file:
        directories.append(("log", os.path.dirname(config.log_file)))

    for purpose, directory in directories:
        if directory and not os.path.exists(directory):
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create {purpose} directory {directory}: {e}")

    total_workers = sum(lane.concurrency for lane in config.lanes.values())
    if total_workers > 200:
        errors.append(f"Total lane concurrency {total_workers} exceeds 200 worker threads")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(debug=True, reload=True, log_level=LogLevel.DEBUG, database_echo=True)


def get_production_config() -> AppConfig:
    return AppConfig(log_level=LogLevel.INFO, log_structured=True, cors_origins=[])


def get_testing_config() -> AppConfig:
    """Small worker pools, fast backoff and an in-memory database."""
    lanes = {
        name: lane.model_copy(update={"concurrency": 2, "backoff_delay": 0.01})
        for name, lane in default_lanes().items()
    }
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        lanes=lanes,
        queue_shutdown_timeout=5.0,
        http_timeout=5.0
    )
