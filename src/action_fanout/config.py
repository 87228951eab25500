"""
Fanout Configuration

Type-safe settings for the broker connection, topology, subscriber runtime,
audit store and logging. Values come from defaults, an optional YAML file and
``FANOUT_`` environment variables (highest precedence).
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import FanoutError
from .messaging.backends import BackendConfig, BackendType

logger = logging.getLogger(__name__)


class ConsumerRole(str, Enum):
    """Consumer roles bound to the user action exchange."""

    ANALYTICS = "analytics"
    NOTIFICATION = "notification"
    AUDIT = "audit"
    CACHE = "cache"


class AuditLogFormat(str, Enum):
    """On-disk layout of the audit record store."""

    JSON = "json"
    JSONL = "jsonl"


DEFAULT_QUEUES = {
    ConsumerRole.ANALYTICS: "analytics.queue",
    ConsumerRole.NOTIFICATION: "notification.queue",
    ConsumerRole.AUDIT: "audit.queue",
    ConsumerRole.CACHE: "cache.invalidation.queue",
}


class ConfigurationError(FanoutError):
    """Raised when settings cannot be loaded or validated."""


class BrokerSettings(BaseModel):
    """Broker connection settings."""

    backend: BackendType = Field(default=BackendType.RABBITMQ, description="Broker backend")
    url: str | None = Field(default="amqp://localhost", description="Broker connection URL")
    host: str = Field(default="localhost", description="Broker host when no URL is set")
    port: int = Field(default=5672, description="Broker port when no URL is set")
    username: str | None = None
    password: str | None = None
    virtual_host: str = "/"
    connection_timeout: float = Field(default=30.0, gt=0)
    heartbeat: int = Field(default=60, ge=0, description="AMQP heartbeat interval in seconds, 0 disables")
    prefetch_count: int = Field(default=1, ge=1, description="Unacked deliveries per consumer")
    publisher_confirms: bool = True

    def to_backend_config(self, name: str = "default") -> BackendConfig:
        return BackendConfig(
            backend_type=self.backend,
            name=name,
            url=self.url,
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            virtual_host=self.virtual_host,
            connection_timeout=self.connection_timeout,
            heartbeat=self.heartbeat,
            prefetch_count=self.prefetch_count,
            publisher_confirms=self.publisher_confirms,
        )


class TopologySettings(BaseModel):
    """Exchange and queue names."""

    exchange: str = Field(default="user.actions", description="Fanout exchange name")
    durable: bool = Field(default=True, description="Exchange and queues survive broker restarts")
    queues: dict[ConsumerRole, str] = Field(default_factory=lambda: dict(DEFAULT_QUEUES))

    @field_validator("queues")
    @classmethod
    def _fill_missing_roles(cls, value: dict[ConsumerRole, str]) -> dict[ConsumerRole, str]:
        return {**DEFAULT_QUEUES, **value}

    def queue_for(self, role: ConsumerRole) -> str:
        return self.queues[role]


class RuntimeSettings(BaseModel):
    """Subscriber runtime behavior."""

    poll_interval: float = Field(default=0.5, gt=0, description="Seconds between stop checks")
    redelivery_delay: float = Field(default=1.0, ge=0, description="Delay before requeueing a failed event")
    reconnect_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int | None = Field(default=None, description="None retries forever")


class AuditSettings(BaseModel):
    """Audit record store settings."""

    path: Path = Field(default=Path("audit-log.json"))
    format: AuditLogFormat = AuditLogFormat.JSON


class MetricsSettings(BaseModel):
    """Prometheus exposition settings."""

    port: int | None = Field(default=None, ge=1, le=65535, description="Serve /metrics on this port, None disables")
    address: str = Field(default="0.0.0.0", description="Address the metrics server binds to")


class LoggingSettings(BaseModel):
    """Log output settings."""

    level: str = "INFO"
    json_format: bool = Field(default=False, description="Emit JSON log lines")


class FanoutSettings(BaseSettings):
    """Top-level settings for publishers and consumer roles."""

    model_config = SettingsConfigDict(
        env_prefix="FANOUT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="action-fanout", description="Name used in log context")
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    topology: TopologySettings = Field(default_factory=TopologySettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}", cause=e) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", cause=e) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def load_settings(path: Path | str | None = None, **overrides: Any) -> FanoutSettings:
    """Load settings from an optional YAML file, the environment and overrides.

    Environment variables take precedence over the YAML file; explicit keyword
    overrides take precedence over both.
    """
    file_values: dict[str, Any] = {}
    if path is not None:
        file_values = _load_yaml(Path(path))
        logger.debug("Loaded configuration from %s", path)

    try:
        env_settings = FanoutSettings()
        merged = _deep_merge(file_values, env_settings.model_dump(exclude_unset=True))
        merged = _deep_merge(merged, overrides)
        return FanoutSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", cause=e) from e


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
