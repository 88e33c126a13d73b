import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from stream_queue.core.config import QueueConfig
from stream_queue.core.redis_client import RedisClient
from stream_queue.schemas.message import DelayedTask, encode_metadata, encode_payload
from .base_service import BaseService


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp).isoformat()


class DelayedTaskStore(BaseService):
    """
    Tasks that are not due yet, kept in a sorted set scored by due time.

    Members are the serialized task JSON, so removing a member requires the
    exact string returned by ``due_tasks``.
    """

    def __init__(self, redis: RedisClient, config: QueueConfig,
                 clock: Callable[[], float] = time.time):
        super().__init__(redis, config)
        self.key = config.delayed_queue_name
        self.clock = clock

    async def schedule(self, payload: Any, delay_seconds: float,
                       metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Insert a task due ``delay_seconds`` from now. Returns the task id."""
        message, encoding = encode_payload(payload)
        now = self.clock()
        delay_seconds = max(0, delay_seconds)

        task = DelayedTask(
            id=f"delayed_{uuid.uuid4().hex}",
            message=message,
            encoding=encoding,
            metadata=encode_metadata(metadata),
            execute_time=now + delay_seconds,
            delay_seconds=delay_seconds,
            created_at=now,
        )
        await self.redis.sorted_add(self.key, task.raw, task.execute_time)

        self.logger.info("Delayed task added to queue",
                         task_id=task.id,
                         delay_seconds=delay_seconds,
                         execute_time=_iso(task.execute_time),
                         queue=self.key)
        return task.id

    async def due_tasks(self, before: Optional[float] = None, limit: int = 0) -> List[str]:
        """Serialized tasks due at or before ``before``, oldest due first."""
        before = self.clock() if before is None else before
        return await self.redis.sorted_range_by_score(self.key, "-inf", before, limit=limit)

    async def remove(self, task: Union[DelayedTask, str]) -> bool:
        """Remove one task. False means some other actor removed it first."""
        raw = task.raw if isinstance(task, DelayedTask) else task
        return await self.redis.sorted_remove(self.key, raw) > 0

    async def restore(self, task: DelayedTask) -> None:
        """Put a claimed task back under its original score."""
        await self.redis.sorted_add(self.key, task.raw, task.execute_time)
        self.logger.warning("Delayed task restored", task_id=task.id, queue=self.key)

    async def length(self) -> int:
        return await self.redis.sorted_length(self.key)

    async def count_due_within(self, window: float = 60) -> int:
        now = self.clock()
        return await self.redis.sorted_count(self.key, now, now + window)

    async def count_overdue(self) -> int:
        return await self.redis.sorted_count(self.key, "-inf", self.clock())

    async def stats(self) -> Dict[str, Any]:
        earliest = await self.redis.sorted_first(self.key)
        return {
            "total_delayed_tasks": await self.length(),
            "upcoming_tasks_60s": await self.count_due_within(60),
            "expired_tasks": await self.count_overdue(),
            "earliest_task_time": _iso(earliest[1]) if earliest else None,
            "queue_name": self.key,
            "current_time": _iso(self.clock()),
        }

    async def cleanup_expired(self, max_age: float = 86400, max_tasks: int = 0) -> int:
        """Drop tasks overdue by more than ``max_age`` seconds."""
        now = self.clock()
        cutoff = now - max_age
        cleaned = 0

        expired = await self.redis.sorted_range_by_score(
            self.key, "-inf", cutoff, limit=self.config.scheduler_batch_size
        )
        for raw in expired:
            if max_tasks > 0 and cleaned >= max_tasks:
                break
            if await self.remove(raw):
                cleaned += 1
                self.logger.info("Expired delayed task cleaned up", task_data=raw[:200])

        self.logger.info("Cleanup completed",
                         cleaned_count=cleaned,
                         processed_tasks=len(expired),
                         max_age=max_age)
        return cleaned
