"""
Pytest configuration and fixtures for stream queue tests.
"""
import pytest

from stream_queue.core.config import QueueConfig
from stream_queue.core.logging import setup_logging
from stream_queue.core.redis_client import RedisClient
from stream_queue.services.delayed_store import DelayedTaskStore
from stream_queue.services.stream_queue import StreamQueue
from tests.fakes import FakeRedis


class FakeClock:
    """Manually advanced clock for delay tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Keep info logs off stdout so CLI output can be parsed."""
    setup_logging(level="WARNING")


@pytest.fixture
def fake_redis():
    """In-memory Redis shared by every client built in a test."""
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis):
    """RedisClient wired to the in-memory Redis."""
    client = RedisClient("redis://localhost:6379/15")
    client.client = fake_redis
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_config():
    """Short block timeout so empty reads return quickly."""
    return QueueConfig(
        stream_name="test_stream",
        consumer_group="test_group",
        consumer_name="consumer_1",
        block_timeout_ms=20,
        retry_attempts=2,
        scheduler_interval=0.01,
        scheduler_batch_size=10,
    )


@pytest.fixture
def make_queue(redis_client, queue_config, clock):
    """Build queues on the shared in-memory Redis, one per consumer name."""
    def _make(consumer_name: str = "consumer_1", **overrides) -> StreamQueue:
        config = queue_config.with_overrides(consumer_name=consumer_name, **overrides)
        return StreamQueue(
            redis_client,
            config,
            delayed=DelayedTaskStore(redis_client, config, clock=clock),
            clock=clock,
        )
    return _make


@pytest.fixture
def queue(make_queue):
    return make_queue()
