import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from stream_queue.schemas.message import Message


class MessageHandler(ABC):
    """
    Processes one message.

    Returning ``True`` (or ``None``) means the message was handled and may be
    acknowledged; anything else leaves it claimed. ``handle`` may be a
    coroutine function.
    """

    @abstractmethod
    def handle(self, message: Message) -> Any:
        raise NotImplementedError


class CallableHandler(MessageHandler):
    """Adapts a plain function, coroutine function or bound method."""

    def __init__(self, func: Callable[[Message], Any]):
        self.func = func

    def handle(self, message: Message) -> Any:
        return self.func(message)

    def __repr__(self) -> str:
        return f"CallableHandler({getattr(self.func, '__qualname__', self.func)!r})"


def resolve_handler(handler: Any) -> Optional[MessageHandler]:
    """Turn a function or an object with a ``handle`` method into a MessageHandler."""
    if handler is None or isinstance(handler, MessageHandler):
        return handler
    handle = getattr(handler, "handle", None)
    if callable(handle):
        return CallableHandler(handle)
    if callable(handler):
        return CallableHandler(handler)
    raise TypeError(f"Handler must be callable or expose handle(), got {type(handler).__name__}")


async def invoke_handler(handler: MessageHandler, message: Message) -> Any:
    result = handler.handle(message)
    if inspect.isawaitable(result):
        result = await result
    return result
