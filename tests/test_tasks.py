"""
Tests for the Celery maintenance tasks.
"""
import asyncio

from unittest.mock import patch

from stream_queue.workers.celery_app import celery_app, settings
from stream_queue.workers.tasks import cleanup_expired_delayed_messages, promote_delayed_messages


class TestCeleryTasks:
    """Test cases for Celery tasks and beat schedule."""

    def test_beat_schedule(self):
        """Test promotion runs every scheduler interval and cleanup daily."""
        schedule = celery_app.conf.beat_schedule

        promote = schedule["promote-delayed-messages"]
        assert promote["task"] == "stream_queue.workers.tasks.promote_delayed_messages"
        assert promote["schedule"] == settings.SCHEDULER_INTERVAL
        assert "cleanup-expired-delayed-messages" in schedule

    def test_promote_delayed_messages(self, queue, clock, fake_redis):
        """Test the task runs one scheduler tick and closes its connection."""
        asyncio.run(queue.send("x", delay_seconds=1))
        asyncio.run(queue.send("y", delay_seconds=100))
        clock.advance(1)

        with patch("stream_queue.workers.tasks.create_queue", return_value=queue):
            promoted = promote_delayed_messages()

        assert promoted == 1
        assert len(fake_redis.streams["test_stream"].entries) == 1
        assert len(fake_redis.zsets["test_stream_delayed"]) == 1
        assert fake_redis.closed is True

    def test_cleanup_expired_delayed_messages(self, queue, clock, fake_redis):
        """Test the cleanup task drops long overdue tasks only."""
        asyncio.run(queue.send("stale", delay_seconds=1))
        asyncio.run(queue.send("fresh", delay_seconds=5000))
        clock.advance(3600)

        with patch("stream_queue.workers.tasks.create_queue", return_value=queue):
            cleaned = cleanup_expired_delayed_messages(max_age=600)

        assert cleaned == 1
        assert len(fake_redis.zsets["test_stream_delayed"]) == 1
