import base64
import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, ValidationError

from stream_queue.core.exceptions import (
    HandlerFailure,
    NoMessageFound,
    ReservedFieldError,
    SerializationError,
)


class MessageStatus(str, Enum):
    PENDING = "pending"
    DELAYED = "delayed"
    DELIVERED = "delivered"
    DEAD = "dead"


class DeliveryStatus(str, Enum):
    ACKED = "acked"
    CLAIMED = "claimed"
    HANDLER_FAILED = "handler_failed"
    READ = "read"


class PayloadEncoding(str, Enum):
    TEXT = "text"
    JSON = "json"
    BASE64 = "base64"


# Core record fields; caller metadata may not use these names.
RESERVED_FIELDS = frozenset({
    "message",
    "timestamp",
    "attempts",
    "status",
    "execute_time",
    "delay_seconds",
})

# Bookkeeping written by the queue itself.
SYSTEM_FIELDS = frozenset({
    "encoding",
    "transferred_at",
    "delayed_task_id",
    "original_delay",
    "created_at",
})


def encode_payload(payload: Any) -> Tuple[str, PayloadEncoding]:
    """Encode a payload for storage. Strings are stored verbatim."""
    if isinstance(payload, str):
        return payload, PayloadEncoding.TEXT
    if isinstance(payload, (bytes, bytearray)):
        return base64.b64encode(bytes(payload)).decode("ascii"), PayloadEncoding.BASE64
    try:
        return json.dumps(payload, ensure_ascii=False, allow_nan=False), PayloadEncoding.JSON
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Payload of type {type(payload).__name__} is not serializable: {e}") from e


def decode_payload(raw: str, encoding: PayloadEncoding) -> Any:
    if encoding == PayloadEncoding.JSON:
        try:
            return json.loads(raw)
        except ValueError as e:
            raise SerializationError(f"Stored JSON payload is malformed: {e}") from e
    if encoding == PayloadEncoding.BASE64:
        return base64.b64decode(raw)
    return raw


def encode_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Validate caller metadata and convert scalar values to strings."""
    if not metadata:
        return {}
    encoded: Dict[str, str] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise SerializationError(f"Metadata keys must be strings, got {type(key).__name__}")
        if key in RESERVED_FIELDS or key in SYSTEM_FIELDS:
            raise ReservedFieldError(f"Metadata key '{key}' is reserved")
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            encoded[key] = str(value)
        else:
            raise SerializationError(
                f"Metadata value for '{key}' must be a string or number, got {type(value).__name__}"
            )
    return encoded


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DeliveryResult(BaseModel):
    status: DeliveryStatus
    message_id: str
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def from_failure(cls, failure: HandlerFailure, attempts: int) -> "DeliveryResult":
        """Record a handler exception without raising it."""
        return cls(
            status=DeliveryStatus.HANDLER_FAILED,
            message_id=failure.message_id,
            attempts=attempts,
            error=str(failure.error),
            error_kind=type(failure.error).__name__,
        )


class Message(BaseModel):
    """A live-queue entry as seen by a consumer."""

    id: str
    message: str
    encoding: PayloadEncoding = PayloadEncoding.TEXT
    metadata: Dict[str, str] = Field(default_factory=dict)
    attempts: int = 0
    status: MessageStatus = MessageStatus.PENDING
    timestamp: Optional[float] = None
    transferred_at: Optional[float] = None
    delayed_task_id: Optional[str] = None
    original_delay: Optional[float] = None
    created_at: Optional[float] = None
    delivery: Optional[DeliveryResult] = None

    @property
    def payload(self) -> Any:
        """The payload decoded back to what the producer sent."""
        return decode_payload(self.message, self.encoding)

    @classmethod
    def from_entry(cls, message_id: str, fields: Optional[Mapping[str, str]]) -> "Message":
        if not fields or "message" not in fields:
            raise NoMessageFound(f"Entry {message_id} has no message body")

        try:
            encoding = PayloadEncoding(fields.get("encoding") or PayloadEncoding.TEXT.value)
        except ValueError:
            encoding = PayloadEncoding.TEXT
        try:
            status = MessageStatus(fields.get("status") or MessageStatus.PENDING.value)
        except ValueError:
            status = MessageStatus.PENDING
        try:
            attempts = int(fields.get("attempts") or 0)
        except ValueError:
            attempts = 0

        return cls(
            id=message_id,
            message=fields["message"],
            encoding=encoding,
            metadata={
                k: v for k, v in fields.items()
                if k not in RESERVED_FIELDS and k not in SYSTEM_FIELDS
            },
            attempts=attempts,
            status=status,
            timestamp=_optional_float(fields.get("timestamp")),
            transferred_at=_optional_float(fields.get("transferred_at")),
            delayed_task_id=fields.get("delayed_task_id") or None,
            original_delay=_optional_float(fields.get("original_delay")),
            created_at=_optional_float(fields.get("created_at")),
        )

    def to_fields(self) -> Dict[str, Any]:
        """Flat record for XADD."""
        fields: Dict[str, Any] = dict(self.metadata)
        fields.update({
            "message": self.message,
            "encoding": self.encoding.value,
            "attempts": self.attempts,
            "status": self.status.value,
        })
        optional = {
            "timestamp": self.timestamp,
            "transferred_at": self.transferred_at,
            "delayed_task_id": self.delayed_task_id,
            "original_delay": self.original_delay,
            "created_at": self.created_at,
        }
        fields.update({k: v for k, v in optional.items() if v is not None})
        return fields


class DelayedTask(BaseModel):
    """A message waiting in the delayed sorted set, scored by execute_time."""

    id: str
    message: str
    encoding: PayloadEncoding = PayloadEncoding.TEXT
    metadata: Dict[str, str] = Field(default_factory=dict)
    execute_time: float
    delay_seconds: float
    created_at: float
    attempts: int = 0
    status: MessageStatus = MessageStatus.DELAYED

    _raw: Optional[str] = PrivateAttr(default=None)

    @property
    def raw(self) -> str:
        """The exact serialized member stored in the sorted set."""
        if self._raw is None:
            self._raw = self.to_json()
        return self._raw

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "DelayedTask":
        try:
            task = cls.model_validate(json.loads(raw))
        except (ValueError, TypeError, ValidationError) as e:
            raise SerializationError(f"Invalid delayed task data: {e}") from e
        task._raw = raw
        return task

    def to_live_fields(self, now: float) -> Dict[str, Any]:
        """Record appended to the live queue when this task is promoted."""
        fields: Dict[str, Any] = dict(self.metadata)
        fields.update({
            "message": self.message,
            "encoding": self.encoding.value,
            "timestamp": now,
            "attempts": 0,
            "status": MessageStatus.PENDING.value,
            "transferred_at": now,
            "delayed_task_id": self.id,
            "original_delay": self.delay_seconds,
            "created_at": self.created_at,
        })
        return fields
