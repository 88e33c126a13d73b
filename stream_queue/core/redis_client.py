import logging
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.asyncio import ConnectionPool
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from stream_queue.core.config import Settings
from stream_queue.core.exceptions import StoreError, StoreUnavailable

logger = logging.getLogger(__name__)

StreamEntry = Tuple[str, Optional[Dict[str, str]]]


def _store_error(operation: str, error: Exception) -> StoreError:
    if isinstance(error, (RedisConnectionError, RedisTimeoutError)):
        return StoreUnavailable(f"Redis unavailable during {operation}: {error}", operation)
    return StoreError(f"Redis {operation} failed: {error}", operation)


def _entries_for(response: Any, stream: str) -> List[StreamEntry]:
    """Pick one stream's entries out of an XREAD/XREADGROUP reply (RESP2 or RESP3)."""
    if not response:
        return []
    if isinstance(response, dict):
        return list(response.get(stream) or [])
    for name, entries in response:
        if name == stream:
            return list(entries or [])
    return []


class RedisClient:
    """
    Redis client for stream, consumer-group and sorted-set operations.

    Each instance owns its connection pool. Components that should share a
    connection receive the same instance explicitly.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", max_connections: int = 50,
                 socket_timeout: Optional[float] = None):
        self.url = url
        self.pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            decode_responses=True
        )
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Initialize Redis connection."""
        try:
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
            logger.info("Redis connection established")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.client = None
            raise _store_error("connect", e) from e

    async def disconnect(self):
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Redis connection closed")

    async def _conn(self) -> redis.Redis:
        if not self.client:
            await self.connect()
        return self.client

    async def ping(self) -> bool:
        """Health check."""
        try:
            client = await self._conn()
            return bool(await client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            raise _store_error("ping", e) from e

    def pool_status(self) -> Dict[str, Any]:
        kwargs = self.pool.connection_kwargs
        return {
            "connected": self.client is not None,
            "host": kwargs.get("host"),
            "port": kwargs.get("port"),
            "db": kwargs.get("db"),
            "max_connections": self.pool.max_connections,
        }

    # Streams

    async def append(self, stream: str, fields: Dict[str, Any]) -> str:
        """Append an entry to a stream (XADD) and return its id."""
        try:
            client = await self._conn()
            return await client.xadd(stream, fields)
        except RedisError as e:
            logger.error(f"Failed to append to {stream}: {e}")
            raise _store_error("xadd", e) from e

    async def ensure_group(self, stream: str, group: str, start_id: str = "0") -> bool:
        """Create a consumer group (and the stream). Returns False if it already existed."""
        try:
            client = await self._conn()
            await client.xgroup_create(stream, group, id=start_id, mkstream=True)
            logger.info(f"Consumer group {group} created on {stream}")
            return True
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            logger.error(f"Failed to create consumer group {group} on {stream}: {e}")
            raise _store_error("xgroup_create", e) from e
        except RedisError as e:
            logger.error(f"Failed to create consumer group {group} on {stream}: {e}")
            raise _store_error("xgroup_create", e) from e

    async def read_group(self, stream: str, group: str, consumer: str,
                         count: int = 1, block_ms: Optional[int] = None) -> List[StreamEntry]:
        """Claim new entries for a consumer (XREADGROUP ... >)."""
        try:
            client = await self._conn()
            response = await client.xreadgroup(group, consumer, {stream: ">"}, count=count, block=block_ms)
            return _entries_for(response, stream)
        except RedisError as e:
            logger.error(f"Failed to read group {group} from {stream}: {e}")
            raise _store_error("xreadgroup", e) from e

    async def read(self, stream: str, last_id: str, count: int = 1,
                   block_ms: Optional[int] = None) -> List[StreamEntry]:
        """Read entries after last_id without touching group state (XREAD)."""
        try:
            client = await self._conn()
            response = await client.xread({stream: last_id}, count=count, block=block_ms)
            return _entries_for(response, stream)
        except RedisError as e:
            logger.error(f"Failed to read {stream} after {last_id}: {e}")
            raise _store_error("xread", e) from e

    async def range(self, stream: str, start: str = "-", end: str = "+",
                    count: Optional[int] = None) -> List[StreamEntry]:
        """Range read (XRANGE)."""
        try:
            client = await self._conn()
            return list(await client.xrange(stream, min=start, max=end, count=count))
        except RedisError as e:
            logger.error(f"Failed to range {stream}: {e}")
            raise _store_error("xrange", e) from e

    async def ack(self, stream: str, group: str, *message_ids: str) -> int:
        try:
            client = await self._conn()
            return await client.xack(stream, group, *message_ids)
        except RedisError as e:
            logger.error(f"Failed to ack {message_ids} on {stream}: {e}")
            raise _store_error("xack", e) from e

    async def delete(self, stream: str, *message_ids: str) -> int:
        try:
            client = await self._conn()
            return await client.xdel(stream, *message_ids)
        except RedisError as e:
            logger.error(f"Failed to delete {message_ids} from {stream}: {e}")
            raise _store_error("xdel", e) from e

    async def pending_entry(self, stream: str, group: str, message_id: str) -> Optional[Dict[str, Any]]:
        """Pending bookkeeping for one id, or None if it is not pending."""
        try:
            client = await self._conn()
            entries = await client.xpending_range(stream, group, min=message_id, max=message_id, count=1)
        except RedisError as e:
            logger.error(f"Failed to read pending entry {message_id} on {stream}: {e}")
            raise _store_error("xpending_range", e) from e
        for entry in entries or []:
            if entry.get("message_id") == message_id:
                return entry
        return None

    async def last_delivered_id(self, stream: str, group: str) -> Optional[str]:
        """The group's last-delivered-id (XINFO GROUPS), or None if the group is missing."""
        try:
            client = await self._conn()
            groups = await client.xinfo_groups(stream)
        except RedisError as e:
            logger.error(f"Failed to read group info for {stream}: {e}")
            raise _store_error("xinfo_groups", e) from e
        for info in groups or []:
            if info.get("name") == group:
                return info.get("last-delivered-id")
        return None

    async def pending_summary(self, stream: str, group: str) -> Dict[str, Any]:
        try:
            client = await self._conn()
            return await client.xpending(stream, group)
        except RedisError as e:
            logger.error(f"Failed to read pending summary on {stream}: {e}")
            raise _store_error("xpending", e) from e

    async def stream_length(self, stream: str) -> int:
        try:
            client = await self._conn()
            return await client.xlen(stream)
        except RedisError as e:
            logger.error(f"Failed to get stream length for {stream}: {e}")
            raise _store_error("xlen", e) from e

    # Sorted sets

    async def sorted_add(self, key: str, member: str, score: float) -> int:
        try:
            client = await self._conn()
            return await client.zadd(key, {member: score})
        except RedisError as e:
            logger.error(f"Failed to add to sorted set {key}: {e}")
            raise _store_error("zadd", e) from e

    async def sorted_range_by_score(self, key: str, min_score: Any, max_score: Any,
                                    limit: int = 0) -> List[str]:
        """Members with min_score <= score <= max_score, lowest first; limit 0 is unbounded."""
        try:
            client = await self._conn()
            if limit > 0:
                return list(await client.zrangebyscore(key, min_score, max_score, start=0, num=limit))
            return list(await client.zrangebyscore(key, min_score, max_score))
        except RedisError as e:
            logger.error(f"Failed to range sorted set {key}: {e}")
            raise _store_error("zrangebyscore", e) from e

    async def sorted_remove(self, key: str, member: str) -> int:
        try:
            client = await self._conn()
            return await client.zrem(key, member)
        except RedisError as e:
            logger.error(f"Failed to remove from sorted set {key}: {e}")
            raise _store_error("zrem", e) from e

    async def sorted_count(self, key: str, min_score: Any, max_score: Any) -> int:
        try:
            client = await self._conn()
            return await client.zcount(key, min_score, max_score)
        except RedisError as e:
            logger.error(f"Failed to count sorted set {key}: {e}")
            raise _store_error("zcount", e) from e

    async def sorted_length(self, key: str) -> int:
        try:
            client = await self._conn()
            return await client.zcard(key)
        except RedisError as e:
            logger.error(f"Failed to get sorted set size for {key}: {e}")
            raise _store_error("zcard", e) from e

    async def sorted_first(self, key: str) -> Optional[Tuple[str, float]]:
        """Lowest-scored member with its score."""
        try:
            client = await self._conn()
            items = await client.zrange(key, 0, 0, withscores=True)
        except RedisError as e:
            logger.error(f"Failed to read earliest member of {key}: {e}")
            raise _store_error("zrange", e) from e
        if not items:
            return None
        member, score = items[0]
        return member, float(score)

    # Counters and keys

    async def incr_counter(self, key: str, field: str, amount: int = 1) -> int:
        try:
            client = await self._conn()
            return await client.hincrby(key, field, amount)
        except RedisError as e:
            logger.error(f"Failed to increment {key}.{field}: {e}")
            raise _store_error("hincrby", e) from e

    async def get_counters(self, key: str) -> Dict[str, int]:
        try:
            client = await self._conn()
            raw = await client.hgetall(key)
        except RedisError as e:
            logger.error(f"Failed to read counters {key}: {e}")
            raise _store_error("hgetall", e) from e
        return {field: int(value) for field, value in (raw or {}).items()}

    async def delete_keys(self, *keys: str) -> int:
        try:
            client = await self._conn()
            return await client.delete(*keys)
        except RedisError as e:
            logger.error(f"Failed to delete keys {keys}: {e}")
            raise _store_error("delete", e) from e


def create_redis_client(settings: Optional[Settings] = None) -> RedisClient:
    """Create an owned RedisClient from settings."""
    settings = settings or Settings()
    return RedisClient(
        url=settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
    )
