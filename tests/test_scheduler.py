"""
Tests for delayed message promotion.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from stream_queue.core.exceptions import StoreUnavailable
from stream_queue.workers.scheduler import DelayedScheduler


def make_scheduler(queue, **kwargs):
    kwargs.setdefault("install_signals", False)
    kwargs.setdefault("memory_probe", lambda: 1024)
    return DelayedScheduler(queue, **kwargs)


class TestSchedulerTick:
    """Test cases for a single promotion pass."""

    @pytest.mark.asyncio
    async def test_delay_honored(self, queue, clock):
        """Test a delayed message only becomes consumable after a tick at its due time."""
        scheduler = make_scheduler(queue)
        await queue.send("X", delay_seconds=2)

        assert await queue.consume() is None
        assert await scheduler.tick() == 0

        clock.advance(2)
        assert await scheduler.tick() == 1

        message = await queue.consume()
        assert message.payload == "X"
        assert message.attempts == 1
        assert await queue.delayed.length() == 0

    @pytest.mark.asyncio
    async def test_promoted_record(self, queue, fake_redis, clock):
        """Test promoted entries are fresh with provenance fields."""
        scheduler = make_scheduler(queue)
        task_id = await queue.send({"job": "report"}, {"user": "u1"}, delay_seconds=5)
        created = clock.now
        clock.advance(6)

        await scheduler.tick()

        _, fields = fake_redis.streams["test_stream"].entries[0]
        assert fields["attempts"] == "0"
        assert fields["status"] == "pending"
        assert fields["delayed_task_id"] == task_id
        assert float(fields["transferred_at"]) == clock.now
        assert float(fields["created_at"]) == created
        assert float(fields["original_delay"]) == 5
        assert fields["user"] == "u1"
        assert "execute_time" not in fields
        assert "delay_seconds" not in fields

        message = await queue.consume()
        assert message.payload == {"job": "report"}
        assert message.delayed_task_id == task_id
        assert (await queue.counters())["promoted"] == 1

    @pytest.mark.asyncio
    async def test_batch_size_and_max_messages(self, queue, clock):
        """Test a tick promotes at most the batch size and stops at max_messages."""
        for i in range(5):
            await queue.send(f"m{i}", delay_seconds=1)
        clock.advance(1)
        scheduler = make_scheduler(queue, max_batch_size=3)

        assert await scheduler.tick(max_messages=2) == 2
        assert await scheduler.tick() == 3
        assert await scheduler.tick() == 0
        assert scheduler.totals() == {"total_cycles": 3, "total_promoted": 5}

    @pytest.mark.asyncio
    async def test_promotes_in_due_order(self, queue, clock):
        """Test earlier due tasks are promoted first."""
        await queue.send("second", delay_seconds=2)
        await queue.send("first", delay_seconds=1)
        clock.advance(3)

        await make_scheduler(queue).tick()

        assert (await queue.consume()).payload == "first"
        assert (await queue.consume()).payload == "second"

    @pytest.mark.asyncio
    async def test_malformed_task_dropped(self, queue, fake_redis, clock):
        """Test an undecodable task is removed without aborting the batch."""
        await queue.send("good", delay_seconds=1)
        fake_redis.zsets[queue.delayed.key]["{not json"] = clock.now
        clock.advance(1)

        assert await make_scheduler(queue).tick() == 1
        assert await queue.delayed.length() == 0

    @pytest.mark.asyncio
    async def test_concurrent_schedulers_promote_once(self, make_queue, clock):
        """Test two schedulers on the same store promote each task exactly once."""
        first = make_queue("scheduler_a")
        second = make_queue("scheduler_b")
        for i in range(20):
            await first.send(f"task-{i}", delay_seconds=1)
        clock.advance(1)
        scheduler_a = make_scheduler(first, max_batch_size=50)
        scheduler_b = make_scheduler(second, max_batch_size=50)

        promoted = await asyncio.gather(scheduler_a.tick(), scheduler_b.tick())

        assert sum(promoted) == 20
        assert await first.stream_length() == 20
        assert await first.delayed.length() == 0

    @pytest.mark.asyncio
    async def test_append_failure_restores_task(self, queue, clock):
        """Test a task is put back when the live append fails."""
        await queue.send("x", delay_seconds=1)
        clock.advance(1)
        scheduler = make_scheduler(queue)

        with patch.object(queue, "append_record", AsyncMock(side_effect=StoreUnavailable("down", "xadd"))):
            with pytest.raises(StoreUnavailable):
                await scheduler.tick()

        assert await queue.delayed.length() == 1
        assert await scheduler.tick() == 1


class TestSchedulerLoop:
    """Test cases for the blocking scheduler loop."""

    @pytest.mark.asyncio
    async def test_run_with_runtime(self, queue, clock):
        """Test the loop ticks repeatedly and stops after its runtime."""
        await queue.send("x", delay_seconds=1)
        clock.advance(1)
        ticks = []
        scheduler = make_scheduler(queue, interval=0.01)

        await scheduler.run(runtime=0.1, on_tick=lambda promoted, stats: ticks.append((promoted, stats)))

        assert scheduler.running is False
        assert len(ticks) >= 2
        assert ticks[0][0] == 1
        assert ticks[0][1]["total_delayed_tasks"] == 0
        assert scheduler.total_promoted == 1

    @pytest.mark.asyncio
    async def test_stop_from_callback(self, queue):
        """Test stop ends the loop after the current tick."""
        scheduler = make_scheduler(queue, interval=10)

        async def on_tick(promoted, stats):
            scheduler.stop()

        await asyncio.wait_for(scheduler.run(on_tick=on_tick), timeout=2)

        assert scheduler.total_cycles == 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(self, queue):
        """Test stop wakes a loop waiting between ticks."""
        scheduler = make_scheduler(queue, interval=30)
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)

        scheduler.stop()
        await asyncio.wait_for(task, timeout=1)

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_before_run(self, queue):
        """Test a stop requested before the loop starts is honoured."""
        scheduler = make_scheduler(queue, interval=0.01)

        scheduler.stop()
        await asyncio.wait_for(scheduler.run(), timeout=1)

        assert scheduler.total_cycles == 0
        assert scheduler.running is False

        # The request is used up; a later run ticks normally.
        await scheduler.run(runtime=0.03)
        assert scheduler.total_cycles >= 1

    @pytest.mark.asyncio
    async def test_memory_limit_stops_loop(self, queue):
        """Test the loop exits before ticking when memory is over the limit."""
        scheduler = make_scheduler(queue, memory_limit=100, memory_probe=lambda: 200)

        await asyncio.wait_for(scheduler.run(), timeout=1)

        assert scheduler.total_cycles == 0

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_stop_loop(self, queue):
        """Test a failing tick is logged and the loop continues."""
        scheduler = make_scheduler(queue, interval=0.01)
        with patch.object(scheduler, "tick", AsyncMock(side_effect=StoreUnavailable("down", "zrangebyscore"))):
            await scheduler.run(runtime=0.05)

            assert scheduler.tick.await_count >= 2

    @pytest.mark.asyncio
    async def test_status(self, queue):
        """Test status reports loop settings and queue figures."""
        scheduler = make_scheduler(queue, memory_limit=2048)
        await scheduler.tick()

        status = await scheduler.status()

        assert status["running"] is False
        assert status["interval"] == 0.01
        assert status["max_batch_size"] == 10
        assert status["memory_usage_percentage"] == 50.0
        assert status["total_cycles"] == 1
        assert status["last_tick_at"] != "never"
        assert status["queue_status"]["stream"] == "test_stream"

    def test_setters_validate(self, queue):
        """Test interval and batch size setters reject bad values."""
        scheduler = make_scheduler(queue)

        scheduler.set_interval(2.5)
        scheduler.set_max_batch_size(7)
        assert scheduler.interval == 2.5
        assert scheduler.max_batch_size == 7

        with pytest.raises(ValueError):
            scheduler.set_interval(0)
        with pytest.raises(ValueError):
            scheduler.set_max_batch_size(0)
