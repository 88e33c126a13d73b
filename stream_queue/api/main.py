import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from stream_queue.core.config import Settings
from stream_queue.core.exceptions import StoreError
from stream_queue.core.logging import setup_logging
from stream_queue.services.stream_queue import StreamQueue, create_queue
from . import health

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, queue: Optional[StreamQueue] = None) -> FastAPI:
    """
    Build the status API.

    A queue passed in is used as is and left connected on shutdown; otherwise
    the app creates its own from settings and closes it when it stops.
    """
    settings = settings or Settings()
    owns_queue = queue is None
    queue = queue or create_queue(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            if queue.redis.client is None:
                await queue.redis.connect()
            logger.info(f"Status API attached to stream {queue.stream_name}")
        except StoreError as e:
            logger.error(f"Status API could not reach Redis: {e}")
            raise

        yield

        if owns_queue:
            try:
                await queue.redis.disconnect()
                logger.info("Stream queue API shutdown completed")
            except Exception as e:
                logger.error(f"Stream queue API shutdown failed: {e}")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Health and status endpoints for a Redis Stream queue.",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue = queue

    app.include_router(health.router, prefix="/v1/health", tags=["health"])

    @app.get("/")
    async def root():
        """Root endpoint with service information."""
        return {
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "status": "running",
            "stream": queue.stream_name,
            "consumer_group": queue.consumer_group,
            "delayed_queue": queue.config.delayed_queue_name,
            "health_check": "/v1/health",
            "queue_status": "/v1/health/queues",
        }

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "status_code": exc.status_code
            }
        )

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE, settings.LOG_JSON)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower()
    )
