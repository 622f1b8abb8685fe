from typing import Any, Dict, Optional

from pydantic import BaseModel

from app.models.outbox import OutboxStatus


class OutboxEventResponse(BaseModel):
    """Schema for inspecting an outbox row."""
    event_id: str
    event_type: str
    aggregate_id: str
    aggregate_type: str
    status: OutboxStatus
    retry_count: int
    last_error: Optional[str] = None
    created_at: str
    published_at: Optional[str] = None
    next_retry_at: Optional[str] = None
    payload: Dict[str, Any]


class OutboxStatsResponse(BaseModel):
    pending: int
    processing: int
    published: int
    failed: int
    dead: int
