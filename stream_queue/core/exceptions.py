class StreamQueueError(Exception):
    """Base class for all queue errors."""
    pass


class ConfigError(StreamQueueError):
    """Raised when queue configuration is invalid."""
    pass


class StoreError(StreamQueueError):
    """Raised when the Redis store rejects or fails a command."""

    def __init__(self, message: str, operation: str = None):
        super().__init__(message)
        self.operation = operation


class StoreUnavailable(StoreError):
    """Raised when the Redis store cannot be reached (connection or timeout)."""
    pass


class SerializationError(StreamQueueError):
    """Raised when a payload or record cannot be encoded or decoded."""
    pass


class ReservedFieldError(SerializationError, ValueError):
    """Raised when caller metadata collides with a reserved record field."""
    pass


class NoMessageFound(StreamQueueError):
    """Internal signal: a read returned an empty or malformed entry."""
    pass


class HandlerFailure(StreamQueueError):
    """Wraps an exception raised by a message handler."""

    def __init__(self, message_id: str, error: BaseException):
        super().__init__(f"Handler failed for message {message_id}: {error}")
        self.message_id = message_id
        self.error = error
