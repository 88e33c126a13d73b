import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stream_queue.core.exceptions import ConfigError


def default_consumer_name(prefix: str = "consumer") -> str:
    """Consumer names default to one per process."""
    return f"{prefix}_{os.getpid()}"


class QueueConfig(BaseModel):
    """
    Immutable per-queue configuration.

    Built once, validated at construction and passed by reference to every
    component that works on the same queue. Use ``with_overrides`` to derive
    a variant instead of mutating.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stream_name: str = "redis_stream_queue"
    consumer_group: str = "redis_stream_group"
    consumer_name: str = Field(default_factory=default_consumer_name)
    block_timeout_ms: int = 5000
    retry_attempts: int = 3
    delayed_queue_suffix: str = "_delayed"
    scheduler_interval: float = 1.0
    scheduler_batch_size: int = 100
    memory_limit_bytes: int = 128 * 1024 * 1024
    debug: bool = False

    @field_validator("stream_name", "consumer_group", "consumer_name", "delayed_queue_suffix")
    @classmethod
    def validate_names(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("block_timeout_ms")
    @classmethod
    def validate_block_timeout(cls, v: int) -> int:
        # A zero BLOCK would wait forever.
        if v <= 0:
            raise ValueError("block_timeout_ms must be positive")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("scheduler_interval")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("scheduler_interval must be positive")
        return v

    @field_validator("scheduler_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler_batch_size must be at least 1")
        return v

    @field_validator("memory_limit_bytes")
    @classmethod
    def validate_memory_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("memory_limit_bytes must be positive")
        return v

    @property
    def delayed_queue_name(self) -> str:
        return f"{self.stream_name}{self.delayed_queue_suffix}"

    @property
    def stats_key(self) -> str:
        return f"{self.stream_name}:stats"

    @classmethod
    def build(cls, **values: Any) -> "QueueConfig":
        """Construct a config, converting validation failures to ConfigError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid queue configuration: {e}") from e

    def with_overrides(self, **overrides: Any) -> "QueueConfig":
        """Return a new validated config with the given fields replaced."""
        values = self.model_dump()
        values.update(overrides)
        return QueueConfig.build(**values)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application
    APP_NAME: str = "Redis Stream Queue"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_SOCKET_TIMEOUT: Optional[float] = None

    # Queue
    STREAM_NAME: str = "redis_stream_queue"
    CONSUMER_GROUP: str = "redis_stream_group"
    CONSUMER_NAME: Optional[str] = None
    BLOCK_TIMEOUT_MS: int = 5000
    RETRY_ATTEMPTS: int = 3
    DELAYED_QUEUE_SUFFIX: str = "_delayed"

    # Scheduler / workers
    SCHEDULER_INTERVAL: float = 1.0
    SCHEDULER_BATCH_SIZE: int = 100
    MEMORY_LIMIT_BYTES: int = 128 * 1024 * 1024
    CLEANUP_MAX_AGE_SECONDS: int = 86400
    CELERY_BROKER_URL: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    LOG_JSON: bool = True

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed_envs = ["development", "staging", "production", "testing"]
        if v not in allowed_envs:
            raise ValueError(f"Environment must be one of: {allowed_envs}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"Log level must be one of: {allowed_levels}")
        return v.upper()

    def queue_config(self, **overrides: Any) -> QueueConfig:
        """Build the immutable queue configuration from these settings."""
        values = {
            "stream_name": self.STREAM_NAME,
            "consumer_group": self.CONSUMER_GROUP,
            "consumer_name": self.CONSUMER_NAME or default_consumer_name(),
            "block_timeout_ms": self.BLOCK_TIMEOUT_MS,
            "retry_attempts": self.RETRY_ATTEMPTS,
            "delayed_queue_suffix": self.DELAYED_QUEUE_SUFFIX,
            "scheduler_interval": self.SCHEDULER_INTERVAL,
            "scheduler_batch_size": self.SCHEDULER_BATCH_SIZE,
            "memory_limit_bytes": self.MEMORY_LIMIT_BYTES,
            "debug": self.DEBUG,
        }
        values.update(overrides)
        return QueueConfig.build(**values)


def get_settings(**values: Any) -> Settings:
    """Load settings from the environment, raising ConfigError when invalid."""
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Configuration loading failed: {e}") from e
