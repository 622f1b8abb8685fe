import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from app.models.outbox import OutboxStatus
from app.schemas.outbox import OutboxEventResponse, OutboxStatsResponse
from app.schemas.response import SuccessResponse
from app.services.outbox_admin_service import get_outbox_stats, list_outbox_events, requeue_outbox_event

router = APIRouter()
log = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _event_data(event) -> dict:
    return OutboxEventResponse(
        event_id=event.event_id,
        event_type=event.event_type,
        aggregate_id=event.aggregate_id,
        aggregate_type=event.aggregate_type,
        status=event.status,
        retry_count=event.retry_count,
        last_error=event.last_error,
        created_at=_iso(event.created_at),
        published_at=_iso(event.published_at),
        next_retry_at=_iso(event.next_retry_at),
        payload=event.payload
    ).model_dump(mode="json")


@router.get("/stats", response_model=SuccessResponse)
async def outbox_stats_endpoint():
    """Row counts per status."""
    stats = await get_outbox_stats()
    return SuccessResponse(data=OutboxStatsResponse(**stats).model_dump())


@router.get("/", response_model=SuccessResponse)
async def list_outbox_endpoint(
    status: Optional[OutboxStatus] = None,
    limit: int = Query(50, ge=1, le=500)
):
    """Newest outbox rows first, optionally filtered by status."""
    events = await list_outbox_events(status=status, limit=limit)
    return SuccessResponse(data=[_event_data(e) for e in events])


@router.post("/{event_id}/requeue", response_model=SuccessResponse)
async def requeue_outbox_endpoint(event_id: str):
    """Puts a failed or dead event back to pending so the relay publishes it again."""
    try:
        event = await requeue_outbox_event(event_id)
        return SuccessResponse(data=_event_data(event))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        log.error("Cannot requeue outbox event %s: %s", event_id, e)
        raise HTTPException(status_code=409, detail=str(e))
