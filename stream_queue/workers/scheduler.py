import asyncio
import inspect
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from stream_queue.core.exceptions import SerializationError, StoreError
from stream_queue.core.logging import get_logger
from stream_queue.core.resources import format_bytes, memory_usage
from stream_queue.schemas.message import DelayedTask
from stream_queue.services.stream_queue import StreamQueue
from .signals import install_signal_handlers, remove_signal_handlers


class DelayedScheduler:
    """
    Promotes due delayed tasks into the live queue.

    Several schedulers may run against the same queue at once: a task is
    only promoted by the scheduler whose removal of it succeeded.
    """

    def __init__(self, queue: StreamQueue, interval: Optional[float] = None,
                 max_batch_size: Optional[int] = None, memory_limit: Optional[int] = None,
                 memory_probe: Callable[[], int] = memory_usage,
                 install_signals: bool = True):
        self.queue = queue
        self.store = queue.delayed
        self.interval = interval or queue.config.scheduler_interval
        self.max_batch_size = max_batch_size or queue.config.scheduler_batch_size
        self.memory_limit = memory_limit or queue.config.memory_limit_bytes
        self.memory_probe = memory_probe
        self.install_signals = install_signals
        self.logger = get_logger(self.__class__.__name__)

        self.running = False
        self.total_cycles = 0
        self.total_promoted = 0
        self.last_tick_at: Optional[float] = None
        self.started_at = time.time()
        self._stop_event = asyncio.Event()

    async def tick(self, max_messages: int = 0) -> int:
        """
        Run one promotion pass and return how many tasks were promoted.

        ``max_messages`` caps this pass below the batch size; 0 means the
        batch size alone applies.
        """
        started = time.monotonic()
        now = self.store.clock()
        due = await self.store.due_tasks(now, self.max_batch_size)
        promoted = 0

        for raw in due:
            if max_messages > 0 and promoted >= max_messages:
                break

            try:
                task = DelayedTask.from_json(raw)
            except SerializationError as e:
                self.logger.warning("Malformed delayed task dropped",
                                    error=str(e),
                                    task_data=raw[:200])
                await self.store.remove(raw)
                continue

            if not await self.store.remove(task):
                self.logger.debug("Delayed task already claimed", task_id=task.id)
                continue

            try:
                message_id = await self.queue.append_record(task.to_live_fields(now))
            except StoreError:
                try:
                    await self.store.restore(task)
                except StoreError as restore_error:
                    self.logger.error("Failed to restore delayed task",
                                      task_id=task.id,
                                      error=str(restore_error))
                raise

            await self.queue.redis.incr_counter(self.queue.config.stats_key, "promoted")
            promoted += 1
            self.logger.info("Delayed task promoted",
                             task_id=task.id,
                             message_id=message_id,
                             stream=self.queue.stream_name)

        self.total_cycles += 1
        self.total_promoted += promoted
        self.last_tick_at = time.time()
        self.logger.info("Schedule cycle completed",
                         cycle=self.total_cycles,
                         promoted=promoted,
                         duration_ms=round((time.monotonic() - started) * 1000, 2),
                         total_promoted=self.total_promoted)
        return promoted

    async def run(self, runtime: float = 0,
                  on_tick: Optional[Callable[[int, Dict[str, Any]], Any]] = None):
        """
        Tick every ``interval`` seconds until stopped.

        Stops on ``stop()``, SIGTERM/SIGINT, after ``runtime`` seconds when
        positive, or when memory use reaches the limit. A tick is never
        interrupted; a failing tick is logged and the loop carries on.
        """
        if self.running:
            self.logger.warning("Scheduler is already running")
            return
        if self._stop_event.is_set():
            self._stop_event.clear()
            self.logger.info("Scheduler stopped before start")
            return

        self.running = True
        self.started_at = time.time()
        deadline = time.monotonic() + runtime if runtime > 0 else None
        installed = install_signal_handlers(self._handle_stop, self._handle_reload) if self.install_signals else []

        self.logger.info("Delayed scheduler started",
                         interval=self.interval,
                         max_batch_size=self.max_batch_size,
                         memory_limit=format_bytes(self.memory_limit),
                         pid=os.getpid())
        try:
            while not self._stop_event.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    self.logger.info("Scheduler runtime reached", runtime=runtime)
                    break
                if self.memory_probe() >= self.memory_limit:
                    self.logger.warning("Memory limit exceeded, stopping scheduler",
                                        memory_usage=format_bytes(self.memory_probe()),
                                        memory_limit=format_bytes(self.memory_limit))
                    break

                try:
                    promoted = await self.tick()
                    if on_tick is not None:
                        result = on_tick(promoted, await self.store.stats())
                        if inspect.isawaitable(result):
                            await result
                except Exception as e:
                    self.logger.error("Schedule cycle failed",
                                      cycle=self.total_cycles,
                                      error=str(e))

                await self._sleep(self.interval, deadline)
        finally:
            self.running = False
            self._stop_event.clear()
            remove_signal_handlers(installed)
            self.logger.info("Scheduler stopped gracefully",
                             total_cycles=self.total_cycles,
                             total_promoted=self.total_promoted,
                             uptime_seconds=round(time.time() - self.started_at, 2))

    async def _sleep(self, interval: float, deadline: Optional[float]):
        if deadline is not None:
            interval = max(0, min(interval, deadline - time.monotonic()))
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    def stop(self):
        """Stop after the current tick."""
        self.logger.info("Stopping scheduler...")
        self._stop_event.set()

    def _handle_stop(self):
        self.logger.info("Received shutdown signal, stopping gracefully")
        self.stop()

    def _handle_reload(self):
        self.logger.info("Received HUP signal")

    def set_interval(self, interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.logger.info("Scheduler interval updated", interval=interval)

    def set_max_batch_size(self, max_batch_size: int):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.max_batch_size = max_batch_size
        self.logger.info("Scheduler batch size updated", max_batch_size=max_batch_size)

    def totals(self) -> Dict[str, int]:
        return {"total_cycles": self.total_cycles, "total_promoted": self.total_promoted}

    async def status(self) -> Dict[str, Any]:
        usage = self.memory_probe()
        return {
            "running": self.running,
            "interval": self.interval,
            "max_batch_size": self.max_batch_size,
            "memory_limit": format_bytes(self.memory_limit),
            "memory_usage": format_bytes(usage),
            "memory_usage_percentage": round(usage / self.memory_limit * 100, 2),
            **self.totals(),
            "last_tick_at": datetime.fromtimestamp(self.last_tick_at).isoformat() if self.last_tick_at else "never",
            "uptime_seconds": round(time.time() - self.started_at, 2),
            "pid": os.getpid(),
            "queue_status": await self.queue.status(),
        }
