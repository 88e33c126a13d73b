"""
Tests for the delayed task store on the in-memory Redis.
"""
import pytest

from stream_queue.core.exceptions import ReservedFieldError, SerializationError
from stream_queue.schemas.message import DelayedTask


class TestDelayedTaskStore:
    """Test cases for DelayedTaskStore."""

    @pytest.fixture
    def store(self, queue):
        return queue.delayed

    @pytest.mark.asyncio
    async def test_schedule(self, store, fake_redis, clock):
        """Test a task is stored under its due time."""
        task_id = await store.schedule({"job": 1}, 30, {"user": "u1"})

        members = fake_redis.zsets[store.key]
        assert len(members) == 1
        raw, score = next(iter(members.items()))
        task = DelayedTask.from_json(raw)
        assert task.id == task_id
        assert task_id.startswith("delayed_")
        assert score == clock.now + 30
        assert task.execute_time == clock.now + 30
        assert task.delay_seconds == 30
        assert task.created_at == clock.now
        assert task.metadata == {"user": "u1"}

    @pytest.mark.asyncio
    async def test_schedule_rejects_bad_payload(self, store, fake_redis):
        """Test unserialisable payloads fail before anything is stored."""
        with pytest.raises(SerializationError):
            await store.schedule({"bad": object()}, 10)

        assert store.key not in fake_redis.zsets

    @pytest.mark.asyncio
    async def test_schedule_rejects_reserved_metadata(self, store):
        """Test metadata collisions are rejected."""
        with pytest.raises(ReservedFieldError):
            await store.schedule("x", 10, {"execute_time": "0"})

    @pytest.mark.asyncio
    async def test_due_tasks_ordered_and_limited(self, store, clock):
        """Test due tasks come oldest first and respect the limit."""
        await store.schedule("late", 20)
        await store.schedule("early", 5)
        await store.schedule("middle", 10)
        await store.schedule("future", 100)
        clock.advance(30)

        due = await store.due_tasks()
        assert [DelayedTask.from_json(raw).message for raw in due] == ["early", "middle", "late"]

        limited = await store.due_tasks(limit=2)
        assert [DelayedTask.from_json(raw).message for raw in limited] == ["early", "middle"]

    @pytest.mark.asyncio
    async def test_not_due_before_execute_time(self, store, clock):
        """Test tasks are not returned before they are due."""
        await store.schedule("x", 10)

        clock.advance(9.5)
        assert await store.due_tasks() == []

        clock.advance(0.5)
        assert len(await store.due_tasks()) == 1

    @pytest.mark.asyncio
    async def test_remove_is_exclusive(self, store, clock):
        """Test only the first removal claims a task."""
        await store.schedule("x", 1)
        clock.advance(1)
        raw = (await store.due_tasks())[0]

        assert await store.remove(raw) is True
        assert await store.remove(DelayedTask.from_json(raw)) is False

    @pytest.mark.asyncio
    async def test_restore(self, store, clock):
        """Test a claimed task can be put back under its original score."""
        await store.schedule("x", 5)
        clock.advance(5)
        task = DelayedTask.from_json((await store.due_tasks())[0])
        await store.remove(task)

        await store.restore(task)

        assert await store.due_tasks() == [task.raw]

    @pytest.mark.asyncio
    async def test_counts_and_stats(self, store, clock):
        """Test observability queries."""
        await store.schedule("soon", 30)
        await store.schedule("later", 600)
        await store.schedule("overdue", 1)
        clock.advance(2)

        assert await store.length() == 3
        assert await store.count_due_within(60) == 1
        assert await store.count_overdue() == 1

        stats = await store.stats()
        assert stats["total_delayed_tasks"] == 3
        assert stats["upcoming_tasks_60s"] == 1
        assert stats["expired_tasks"] == 1
        assert stats["queue_name"] == "test_stream_delayed"
        assert stats["earliest_task_time"] is not None

    @pytest.mark.asyncio
    async def test_stats_empty(self, store):
        """Test stats on an empty store."""
        stats = await store.stats()

        assert stats["total_delayed_tasks"] == 0
        assert stats["earliest_task_time"] is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store, clock):
        """Test only tasks overdue beyond max age are dropped."""
        await store.schedule("stale", 1)
        await store.schedule("recent", 500)
        await store.schedule("future", 5000)
        clock.advance(1000)

        cleaned = await store.cleanup_expired(max_age=600)

        assert cleaned == 1
        remaining = [DelayedTask.from_json(raw).message for raw in await store.due_tasks(float("inf"))]
        assert remaining == ["recent", "future"]

    @pytest.mark.asyncio
    async def test_cleanup_respects_max_tasks(self, store, clock):
        """Test cleanup stops after max_tasks removals."""
        for i in range(3):
            await store.schedule(f"stale-{i}", 1)
        clock.advance(100)

        assert await store.cleanup_expired(max_age=10, max_tasks=2) == 2
        assert await store.length() == 1
