from abc import ABC

from stream_queue.core.config import QueueConfig
from stream_queue.core.logging import get_logger
from stream_queue.core.redis_client import RedisClient


class BaseService(ABC):
    """Base service class with common functionality."""

    def __init__(self, redis: RedisClient, config: QueueConfig):
        self.redis = redis
        self.config = config
        self.logger = get_logger(self.__class__.__name__)
