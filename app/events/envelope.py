from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field, ValidationError


class MalformedEnvelopeError(ValueError):
    """Raised when a message body cannot be decoded into an EventEnvelope."""


class EventEnvelope(BaseModel):
    """
    Wire format crossing the broker boundary. The envelope uses snake_case field
    names; the inner `data` keeps whatever naming its producer used.
    """
    event_type: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    data: Dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_outbox(cls, event: Any) -> "EventEnvelope":
        """Builds the envelope for an OutboxEvent row; timestamp is the row's creation time."""
        created_at = event.created_at or datetime.now(timezone.utc)
        return cls(
            event_type=event.event_type,
            event_id=event.event_id,
            data=event.payload,
            timestamp=created_at,
        )

    @classmethod
    def parse(cls, body: bytes) -> "EventEnvelope":
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise MalformedEnvelopeError(f"Invalid event envelope: {e.error_count()} error(s)") from e

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")
