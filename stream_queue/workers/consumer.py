import asyncio
from typing import Any, Callable, Optional

from stream_queue.core.logging import get_logger
from stream_queue.core.resources import format_bytes, memory_usage
from stream_queue.schemas.message import DeliveryStatus, Message
from stream_queue.services.handlers import MessageHandler, resolve_handler
from stream_queue.services.stream_queue import StreamQueue
from .signals import install_signal_handlers, remove_signal_handlers


class Consumer:
    """Blocking read/process/ack loop over a StreamQueue."""

    def __init__(self, queue: StreamQueue, handler: Any = None,
                 memory_limit: Optional[int] = None,
                 idle_sleep: float = 0.05,
                 error_backoff: float = 1.0,
                 memory_probe: Callable[[], int] = memory_usage,
                 install_signals: bool = True):
        self.queue = queue
        self.handler: Optional[MessageHandler] = resolve_handler(handler)
        self.memory_limit = memory_limit or queue.config.memory_limit_bytes
        self.idle_sleep = idle_sleep
        self.error_backoff = error_backoff
        self.memory_probe = memory_probe
        self.install_signals = install_signals
        self.logger = get_logger(self.__class__.__name__)

        self.running = False
        self.processed = 0
        self.failed = 0
        self._stop_event = asyncio.Event()

    def set_handler(self, handler: Any) -> "Consumer":
        self.handler = resolve_handler(handler)
        return self

    def set_memory_limit(self, limit: int) -> "Consumer":
        if limit <= 0:
            raise ValueError("memory limit must be positive")
        self.memory_limit = limit
        return self

    def is_running(self) -> bool:
        return self.running

    async def consume(self, handler: Any = None) -> Optional[Message]:
        """Claim and process at most one message with ``handler`` or the configured one."""
        resolved = resolve_handler(handler) if handler is not None else self.handler
        message = await self.queue.consume(resolved)
        if message is not None and message.delivery is not None:
            if message.delivery.status == DeliveryStatus.HANDLER_FAILED:
                self.failed += 1
            else:
                self.processed += 1
        return message

    async def run(self, handler: Any = None):
        """
        Consume until ``stop()`` is called or memory reaches the limit.

        Errors from the queue itself are logged and retried after
        ``error_backoff`` seconds; handler errors never reach this loop.
        """
        if handler is not None:
            self.set_handler(handler)
        if self.handler is None:
            raise ValueError("No handler set for consumer")

        if self._stop_event.is_set():
            self._stop_event.clear()
            self.logger.info("Consumer stopped before start")
            return

        self.running = True
        installed = install_signal_handlers(self._handle_stop) if self.install_signals else []
        self.logger.info("Consumer started",
                         stream=self.queue.stream_name,
                         group=self.queue.consumer_group,
                         consumer=self.queue.consumer_name)
        try:
            while not self._stop_event.is_set():
                try:
                    message = await self.consume()
                except Exception as e:
                    self.logger.error("Consumer error", error=str(e))
                    await self._sleep(self.error_backoff)
                    continue

                if message is None:
                    await self._sleep(self.idle_sleep)
                    continue

                if self._memory_exceeded():
                    self.stop()
        finally:
            self.running = False
            self._stop_event.clear()
            remove_signal_handlers(installed)
            self.logger.info("Consumer stopped",
                             processed=self.processed,
                             failed=self.failed)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _memory_exceeded(self) -> bool:
        usage = self.memory_probe()
        if usage > self.memory_limit:
            self.logger.warning("Memory limit exceeded, stopping consumer",
                                usage=format_bytes(usage),
                                limit=format_bytes(self.memory_limit))
            return True
        return False

    def _handle_stop(self):
        self.logger.info("Received shutdown signal, stopping gracefully")
        self.stop()

    def stop(self):
        """Stop at the next iteration boundary."""
        self._stop_event.set()
        self.logger.info("Stopping consumer...")
