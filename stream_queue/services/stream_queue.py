import time
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional, Tuple

from stream_queue.core.config import QueueConfig, Settings
from stream_queue.core.exceptions import HandlerFailure, NoMessageFound, StoreError
from stream_queue.core.redis_client import RedisClient, create_redis_client
from stream_queue.schemas.message import (
    DeliveryResult,
    DeliveryStatus,
    Message,
    MessageStatus,
    encode_metadata,
    encode_payload,
)
from .base_service import BaseService
from .delayed_store import DelayedTaskStore
from .handlers import MessageHandler, invoke_handler, resolve_handler

CLAIM_POSITIONS = (None, ">")
SCAN_BATCH_SIZE = 100


def stream_id_key(message_id: str) -> Tuple[int, int]:
    """Sort key for a stream id ``<ms>-<seq>``."""
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


class StreamQueue(BaseService):
    """
    Live queue on a Redis Stream read through one consumer group.

    Handles immediate sends, group claims, ack/nack with a bounded retry
    budget, and non-destructive replay/audit scans. Delayed sends go to the
    attached DelayedTaskStore.
    """

    def __init__(self, redis: RedisClient, config: QueueConfig,
                 delayed: Optional[DelayedTaskStore] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(redis, config)
        self.stream_name = config.stream_name
        self.consumer_group = config.consumer_group
        self.consumer_name = config.consumer_name
        self.clock = clock
        self.delayed = delayed or DelayedTaskStore(redis, config, clock=clock)
        self._group_ready = False

    async def ensure_consumer_group(self):
        """Create the stream and consumer group if they do not exist yet."""
        if self._group_ready:
            return
        created = await self.redis.ensure_group(self.stream_name, self.consumer_group, "0")
        if created:
            self.logger.info("Consumer group created",
                             stream=self.stream_name,
                             group=self.consumer_group)
        self._group_ready = True

    # Producing

    async def send(self, payload: Any, metadata: Optional[Mapping[str, Any]] = None,
                   delay_seconds: float = 0) -> str:
        """Send now, or schedule when ``delay_seconds`` is positive."""
        if delay_seconds > 0:
            return await self.delayed.schedule(payload, delay_seconds, metadata)
        return await self.enqueue_immediate(payload, metadata)

    async def enqueue_immediate(self, payload: Any, metadata: Optional[Mapping[str, Any]] = None) -> str:
        message, encoding = encode_payload(payload)
        fields: Dict[str, Any] = encode_metadata(metadata)
        fields.update({
            "message": message,
            "encoding": encoding.value,
            "timestamp": self.clock(),
            "attempts": 0,
            "status": MessageStatus.PENDING.value,
        })
        return await self.append_record(fields)

    async def append_record(self, fields: Mapping[str, Any]) -> str:
        """Append a prepared record to the live queue."""
        await self.ensure_consumer_group()
        message_id = await self.redis.append(self.stream_name, dict(fields))
        self.logger.info("Message sent to stream",
                         message_id=message_id,
                         stream=self.stream_name)
        return message_id

    # Consuming

    async def consume(self, handler: Any = None, position: Optional[str] = None) -> Optional[Message]:
        """
        Return the next message, or None when nothing arrived within the block timeout.

        With the default position the message is claimed for this consumer
        and its attempts are incremented. Any other position (``"0"``,
        ``"0-0"``, ``"$"`` or a stream id) is a plain read that leaves
        attempts and pending state alone.

        A handler result of ``True`` or ``None`` acknowledges a claimed
        message. Handler exceptions are recorded on ``message.delivery`` and
        leave the message claimed.
        """
        if position in CLAIM_POSITIONS:
            message = await self._claim_next()
        else:
            message = await self._read_at(position)

        if message is None:
            return None

        resolved = resolve_handler(handler)
        if resolved is not None:
            await self._dispatch(resolved, message, claimed=position in CLAIM_POSITIONS)
        return message

    async def consume_from(self, message_id: str, handler: Any = None) -> Optional[Message]:
        """Read the entry after ``message_id`` without claiming it."""
        return await self.consume(handler, message_id)

    async def consume_latest(self, handler: Any = None) -> Optional[Message]:
        """Wait up to the block timeout for an entry appended after now."""
        return await self.consume(handler, "$")

    async def _claim_next(self) -> Optional[Message]:
        await self.ensure_consumer_group()
        try:
            entries = await self.redis.read_group(
                self.stream_name,
                self.consumer_group,
                self.consumer_name,
                count=1,
                block_ms=self.config.block_timeout_ms,
            )
        except StoreError as e:
            if "NOGROUP" not in str(e):
                raise
            # Stream or group was removed underneath us.
            self.logger.warning("Consumer group missing, recreating", stream=self.stream_name)
            self._group_ready = False
            await self.ensure_consumer_group()
            return None

        for message_id, fields in entries:
            try:
                message = self._parse(message_id, fields)
            except NoMessageFound as e:
                self.logger.warning("Malformed entry left pending", message_id=message_id, error=str(e))
                return None
            message.attempts += 1
            message.status = MessageStatus.DELIVERED
            self.logger.info("Processing message",
                             message_id=message_id,
                             attempts=message.attempts)
            return message
        return None

    async def _read_at(self, position: str) -> Optional[Message]:
        if position in ("0", "0-0"):
            entries = await self.redis.read(self.stream_name, "0-0", count=1)
        elif position == "$":
            entries = await self.redis.read(self.stream_name, "$", count=1,
                                            block_ms=self.config.block_timeout_ms)
        else:
            entries = await self.redis.read(self.stream_name, position, count=1)

        for message_id, fields in entries:
            try:
                return self._parse(message_id, fields)
            except NoMessageFound:
                self.logger.info("No valid message found", position=position)
                return None
        return None

    def _parse(self, message_id: str, fields: Optional[Mapping[str, str]]) -> Message:
        return Message.from_entry(message_id, fields)

    async def _dispatch(self, handler: MessageHandler, message: Message, claimed: bool):
        try:
            result = await invoke_handler(handler, message)
        except Exception as e:
            self.logger.error("Consumer callback error",
                              message_id=message.id,
                              error_kind=type(e).__name__,
                              error=str(e))
            message.delivery = DeliveryResult.from_failure(HandlerFailure(message.id, e), message.attempts)
            return

        if not claimed:
            status = DeliveryStatus.READ
        elif result is True or result is None:
            await self.ack(message.id)
            status = DeliveryStatus.ACKED
        else:
            status = DeliveryStatus.CLAIMED
        message.delivery = DeliveryResult(status=status, message_id=message.id, attempts=message.attempts)

    # Resolution

    async def ack(self, message_id: str) -> bool:
        """Remove a message from pending bookkeeping. Acking twice is a no-op."""
        result = await self.redis.ack(self.stream_name, self.consumer_group, message_id)
        if result:
            await self.redis.incr_counter(self.config.stats_key, "acked")
        self.logger.info("Message acknowledged",
                         message_id=message_id,
                         stream=self.stream_name,
                         acked=bool(result))
        return result > 0

    async def nack(self, message_id: str, retry: bool = True) -> bool:
        """
        Reject a message.

        With ``retry`` and attempts left the message is re-appended as a new
        entry carrying its attempt count; otherwise it is deleted. Returns
        False when the message no longer exists or was already acknowledged.
        """
        pending = await self.redis.pending_entry(self.stream_name, self.consumer_group, message_id)
        if pending is not None:
            await self.redis.ack(self.stream_name, self.consumer_group, message_id)
        elif await self._already_delivered(message_id):
            # Delivered and no longer pending: acked, which is terminal.
            self.logger.info("Message already resolved", message_id=message_id)
            return False

        entries = await self.redis.range(self.stream_name, message_id, message_id, count=1)
        fields = entries[0][1] if entries else None
        if not fields:
            if pending is not None:
                self.logger.warning("Pending message not found in stream",
                                    message_id=message_id,
                                    pending_info=pending)
            else:
                self.logger.info("Message already resolved", message_id=message_id)
            return False

        delivered = int(pending.get("times_delivered") or 1) if pending else 1
        attempts = int(fields.get("attempts") or 0) + delivered

        if retry and attempts <= self.config.retry_attempts:
            requeued = dict(fields)
            requeued["attempts"] = attempts
            requeued["status"] = MessageStatus.PENDING.value
            # Append before delete: a crash in between duplicates rather than loses.
            new_id = await self.redis.append(self.stream_name, requeued)
            await self.redis.delete(self.stream_name, message_id)
            await self.redis.incr_counter(self.config.stats_key, "requeued")
            self.logger.info("Message retry enqueued",
                             message_id=message_id,
                             new_id=new_id,
                             attempts=attempts)
            return True

        await self.redis.delete(self.stream_name, message_id)
        await self.redis.incr_counter(self.config.stats_key, "dead")
        self.logger.info("Message removed (failed)",
                         message_id=message_id,
                         retry=retry,
                         attempts=attempts,
                         status=MessageStatus.DEAD.value)
        return True

    async def _already_delivered(self, message_id: str) -> bool:
        last_id = await self.redis.last_delivered_id(self.stream_name, self.consumer_group)
        if not last_id:
            return False
        return stream_id_key(message_id) <= stream_id_key(last_id)

    # History

    async def _scan(self, max_messages: int = 0) -> AsyncIterator[Message]:
        start = "-"
        seen = 0
        while True:
            count = SCAN_BATCH_SIZE if max_messages <= 0 else min(SCAN_BATCH_SIZE, max_messages - seen)
            entries = await self.redis.range(self.stream_name, start, "+", count=count)
            for message_id, fields in entries:
                try:
                    message = self._parse(message_id, fields)
                except NoMessageFound:
                    continue
                yield message
                seen += 1
                if max_messages > 0 and seen >= max_messages:
                    return
            if len(entries) < count:
                return
            start = f"({entries[-1][0]}"

    async def replay(self, handler: Any, max_messages: int = 0, auto_ack: bool = True) -> int:
        """Re-run ``handler`` over the stream from the start, acked entries included."""
        resolved = resolve_handler(handler)
        if resolved is None:
            raise TypeError("replay requires a handler")

        processed = 0
        async for message in self._scan(max_messages):
            processed += 1
            try:
                result = await invoke_handler(resolved, message)
            except Exception as e:
                self.logger.error("Replay handler error", message_id=message.id, error=str(e))
                continue
            if auto_ack and result is True:
                await self.ack(message.id)

        self.logger.info("Replay completed", processed=processed, stream=self.stream_name)
        return processed

    async def audit(self, handler: Any, max_messages: int = 0) -> int:
        """Show each stored message to ``handler`` without changing any state."""
        resolved = resolve_handler(handler)
        if resolved is None:
            raise TypeError("audit requires a handler")

        audited = 0
        async for message in self._scan(max_messages):
            audited += 1
            try:
                await invoke_handler(resolved, message)
            except Exception as e:
                self.logger.error("Audit handler error", message_id=message.id, error=str(e))

        self.logger.info("Audit completed", audited=audited, stream=self.stream_name)
        return audited

    # Status

    async def pending_count(self) -> int:
        await self.ensure_consumer_group()
        summary = await self.redis.pending_summary(self.stream_name, self.consumer_group)
        return int((summary or {}).get("pending") or 0)

    async def stream_length(self) -> int:
        return await self.redis.stream_length(self.stream_name)

    async def counters(self) -> Dict[str, int]:
        counters = {"acked": 0, "requeued": 0, "dead": 0, "promoted": 0}
        counters.update(await self.redis.get_counters(self.config.stats_key))
        return counters

    async def status(self) -> Dict[str, Any]:
        return {
            "stream": self.stream_name,
            "consumer_group": self.consumer_group,
            "consumer_name": self.consumer_name,
            "stream_length": await self.stream_length(),
            "pending_count": await self.pending_count(),
            "delayed": await self.delayed.stats(),
            "counters": await self.counters(),
        }

    async def clear(self, include_delayed: bool = False) -> Dict[str, int]:
        """Delete the stream (and its group) plus counters; optionally the delayed set."""
        cleared = {
            "active": await self.redis.delete_keys(self.stream_name, self.config.stats_key),
        }
        if include_delayed:
            cleared["delayed"] = await self.redis.delete_keys(self.delayed.key)
        self._group_ready = False
        self.logger.info("Queue cleared", stream=self.stream_name, cleared_counts=cleared)
        return cleared


def create_queue(settings: Optional[Settings] = None, redis: Optional[RedisClient] = None,
                 config: Optional[QueueConfig] = None, **overrides: Any) -> StreamQueue:
    """
    Build a StreamQueue with its own RedisClient unless one is passed in.

    Pass the same ``redis`` to several queues to share one connection pool.
    """
    settings = settings or Settings()
    if config is None:
        config = settings.queue_config(**overrides)
    elif overrides:
        config = config.with_overrides(**overrides)
    return StreamQueue(redis or create_redis_client(settings), config)
