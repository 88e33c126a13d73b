from .delayed_store import DelayedTaskStore
from .handlers import CallableHandler, MessageHandler, resolve_handler
from .producer import Producer
from .stream_queue import StreamQueue, create_queue

__all__ = [
    "CallableHandler",
    "DelayedTaskStore",
    "MessageHandler",
    "Producer",
    "StreamQueue",
    "create_queue",
    "resolve_handler",
]
