from typing import Any, Dict

from stream_queue.core.config import QueueConfig
from stream_queue.core.exceptions import ConfigError


DEFAULT_PROFILE: Dict[str, Any] = {
    "stream_name": "default_queue",
    "consumer_group": "default_group",
    "block_timeout_ms": 5000,
    "retry_attempts": 3,
}


QUEUE_PROFILES: Dict[str, Dict[str, Any]] = {
    "default": DEFAULT_PROFILE,
    "delayed_queue": {
        "stream_name": "ready_tasks",
        "consumer_group": "delayed_group",
        "block_timeout_ms": 5000,
        "retry_attempts": 3,
        "scheduler_interval": 1.0,
        "scheduler_batch_size": 100,
    },
    "high_priority_delayed": {
        "stream_name": "high_priority_ready",
        "consumer_group": "high_priority_group",
        "block_timeout_ms": 1000,
        "retry_attempts": 5,
        "scheduler_interval": 0.5,
        "scheduler_batch_size": 50,
    },
    "low_priority_delayed": {
        "stream_name": "low_priority_ready",
        "consumer_group": "low_priority_group",
        "block_timeout_ms": 10000,
        "retry_attempts": 2,
        "scheduler_interval": 5.0,
        "scheduler_batch_size": 200,
    },
}


def get_queue_config(profile: str = "default", **overrides: Any) -> QueueConfig:
    """Build a QueueConfig from a named profile plus overrides."""
    if profile not in QUEUE_PROFILES:
        raise ConfigError(f"Unknown queue profile '{profile}'. Available: {sorted(QUEUE_PROFILES)}")
    values = dict(QUEUE_PROFILES[profile])
    values.update(overrides)
    return QueueConfig.build(**values)
