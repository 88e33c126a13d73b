"""Redis Stream message queue with delayed delivery and bounded retries."""

from stream_queue.core.config import QueueConfig, Settings, get_settings
from stream_queue.core.exceptions import (
    ConfigError,
    HandlerFailure,
    NoMessageFound,
    ReservedFieldError,
    SerializationError,
    StoreError,
    StoreUnavailable,
    StreamQueueError,
)
from stream_queue.core.queue_policies import get_queue_config
from stream_queue.core.redis_client import RedisClient, create_redis_client
from stream_queue.schemas.message import DelayedTask, DeliveryResult, DeliveryStatus, Message, MessageStatus
from stream_queue.services import (
    CallableHandler,
    DelayedTaskStore,
    MessageHandler,
    Producer,
    StreamQueue,
    create_queue,
)
from stream_queue.workers.consumer import Consumer
from stream_queue.workers.scheduler import DelayedScheduler

__version__ = "1.0.0"

__all__ = [
    "CallableHandler",
    "ConfigError",
    "Consumer",
    "DelayedScheduler",
    "DelayedTask",
    "DelayedTaskStore",
    "DeliveryResult",
    "DeliveryStatus",
    "HandlerFailure",
    "Message",
    "MessageHandler",
    "MessageStatus",
    "NoMessageFound",
    "Producer",
    "QueueConfig",
    "RedisClient",
    "ReservedFieldError",
    "SerializationError",
    "Settings",
    "StoreError",
    "StoreUnavailable",
    "StreamQueue",
    "StreamQueueError",
    "create_queue",
    "create_redis_client",
    "get_queue_config",
    "get_settings",
]
