from .message import (
    DelayedTask,
    DeliveryResult,
    DeliveryStatus,
    Message,
    MessageStatus,
    PayloadEncoding,
    RESERVED_FIELDS,
    SYSTEM_FIELDS,
)

__all__ = [
    "DelayedTask",
    "DeliveryResult",
    "DeliveryStatus",
    "Message",
    "MessageStatus",
    "PayloadEncoding",
    "RESERVED_FIELDS",
    "SYSTEM_FIELDS",
]
