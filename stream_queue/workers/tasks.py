import asyncio
from typing import Optional

from stream_queue.core.logging import get_logger
from stream_queue.services.stream_queue import create_queue
from .celery_app import celery_app, settings
from .scheduler import DelayedScheduler

logger = get_logger(__name__)


async def _promote(max_messages: int) -> int:
    queue = create_queue(settings)
    try:
        scheduler = DelayedScheduler(queue, install_signals=False)
        return await scheduler.tick(max_messages)
    finally:
        await queue.redis.disconnect()


async def _cleanup(max_age: float) -> int:
    queue = create_queue(settings)
    try:
        return await queue.delayed.cleanup_expired(max_age)
    finally:
        await queue.redis.disconnect()


@celery_app.task(bind=True)
def promote_delayed_messages(self, max_messages: int = 0) -> int:
    """Periodic scheduler tick for deployments that run Celery beat instead of the scheduler loop."""
    try:
        promoted = asyncio.run(_promote(max_messages))
        logger.info("Delayed message promotion completed", promoted=promoted)
        return promoted
    except Exception as e:
        logger.error(f"Delayed message promotion failed: {e}")
        raise


@celery_app.task(bind=True)
def cleanup_expired_delayed_messages(self, max_age: Optional[float] = None) -> int:
    """Drop delayed tasks that have been overdue for longer than ``max_age`` seconds."""
    try:
        cleaned = asyncio.run(_cleanup(max_age or settings.CLEANUP_MAX_AGE_SECONDS))
        logger.info("Delayed message cleanup completed", cleaned=cleaned)
        return cleaned
    except Exception as e:
        logger.error(f"Delayed message cleanup failed: {e}")
        raise
