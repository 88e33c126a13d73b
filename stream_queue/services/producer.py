from typing import Any, Iterable, List, Mapping, Optional

from stream_queue.core.logging import get_logger
from .stream_queue import StreamQueue


class Producer:
    """Thin sending facade over a StreamQueue."""

    def __init__(self, queue: StreamQueue):
        self.queue = queue
        self.logger = get_logger(self.__class__.__name__)

    async def send(self, payload: Any, metadata: Optional[Mapping[str, Any]] = None,
                   delay_seconds: float = 0) -> str:
        return await self.queue.send(payload, metadata, delay_seconds)

    async def send_at(self, payload: Any, timestamp: float,
                      metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Deliver at an absolute unix time; a time in the past sends immediately."""
        delay = timestamp - self.queue.clock()
        return await self.queue.send(payload, metadata, delay if delay > 0 else 0)

    async def send_batch(self, items: Iterable[Any]) -> List[str]:
        """
        Send several messages in order.

        Each item is either a payload or a mapping with ``message`` and
        optional ``metadata`` and ``delay`` keys. Stops at the first failure.
        """
        ids = []
        for item in items:
            if isinstance(item, Mapping) and "message" in item:
                message_id = await self.send(
                    item["message"],
                    item.get("metadata"),
                    item.get("delay") or 0,
                )
            else:
                message_id = await self.send(item)
            ids.append(message_id)

        self.logger.info("Batch sent", count=len(ids), stream=self.queue.stream_name)
        return ids
