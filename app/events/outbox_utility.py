import logging
import re
import uuid
from typing import Any, Dict, Union

from pydantic import BaseModel

from app.models.outbox import OutboxEvent, OutboxStatus

log = logging.getLogger(__name__)

# Dot-separated lowercase namespace, e.g. 'user.registered' or 'user.rating_changed'
EVENT_TYPE_PATTERN = re.compile(r"[a-z0-9_]+(\.[a-z0-9_]+)+")


async def append_outbox_event(
    event_type: str,
    aggregate_id: Any,
    aggregate_type: str,
    payload: Union[Dict[str, Any], BaseModel],
    conn: Any = None
) -> OutboxEvent:
    """
    Appends a new Outbox event record using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the event is created atomically with the business data.
    This function never opens its own transaction and never talks to the broker; any
    failure here fails the enclosing transaction like any other statement would.
    """
    if not isinstance(event_type, str) or not EVENT_TYPE_PATTERN.fullmatch(event_type):
        raise ValueError(f"Invalid event type '{event_type}': expected a dot-separated namespace.")

    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif not isinstance(payload, dict):
        # The envelope carries the payload as a JSON object
        raise ValueError(f"Outbox payload must be a dict or a pydantic model, got {type(payload).__name__}.")

    event = await OutboxEvent.create(
        event_id=str(uuid.uuid4()),
        event_type=event_type,
        aggregate_id=str(aggregate_id),
        aggregate_type=aggregate_type,
        payload=payload,
        status=OutboxStatus.PENDING,
        retry_count=0,
        using_db=conn
    )
    log.info("Event %s queued to outbox with ID %s", event_type, event.event_id)
    return event
