from fastapi import APIRouter, Depends, HTTPException, Request

from stream_queue.core.config import Settings
from stream_queue.core.exceptions import StoreError
from stream_queue.services.stream_queue import StreamQueue

router = APIRouter()


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_queue(request: Request) -> StreamQueue:
    return request.app.state.queue


@router.get("/")
async def health_check(settings: Settings = Depends(get_settings_dep)):
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT
    }


@router.get("/detailed")
async def detailed_health_check(
    settings: Settings = Depends(get_settings_dep),
    queue: StreamQueue = Depends(get_queue),
):
    """Detailed health check including Redis."""
    health_status = {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    try:
        await queue.redis.ping()
        health_status["checks"]["redis"] = {
            "status": "healthy",
            "message": "Redis connection OK",
            "pool": queue.redis.pool_status(),
        }
    except StoreError as e:
        health_status["checks"]["redis"] = {"status": "unhealthy", "message": f"Redis error: {str(e)}"}
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@router.get("/queues")
async def get_queue_status(queue: StreamQueue = Depends(get_queue)):
    """Live stream, pending, delayed and lifetime counter figures for the queue."""
    try:
        queue_status = await queue.status()
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Queue status check failed: {str(e)}")

    return {
        "status": "healthy",
        "queue": queue_status,
        "total_messages": queue_status["stream_length"] + queue_status["delayed"]["total_delayed_tasks"],
    }
