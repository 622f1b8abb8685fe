import logging
from typing import Dict, List, Optional

from app.models.outbox import OutboxEvent, OutboxStatus

log = logging.getLogger(__name__)

# States an operator may push back to pending
REQUEUEABLE_STATUSES = [OutboxStatus.FAILED, OutboxStatus.DEAD]


async def get_outbox_stats() -> Dict[str, int]:
    """Row count per status; a growing 'failed' or 'dead' count needs investigation."""
    stats = {}
    for status in OutboxStatus:
        stats[status.value] = await OutboxEvent.filter(status=status).count()
    return stats


async def list_outbox_events(status: Optional[OutboxStatus] = None, limit: int = 50) -> List[OutboxEvent]:
    query = OutboxEvent.all()
    if status is not None:
        query = query.filter(status=status)
    return await query.order_by("-created_at", "-id").limit(limit)


async def requeue_outbox_event(event_id: str) -> OutboxEvent:
    """
    Manual replay of a failed or dead row: compare-and-set back to pending.
    retry_count and last_error are kept for audit.
    """
    event = await OutboxEvent.get_or_none(event_id=event_id)
    if not event:
        raise LookupError(f"Outbox event {event_id} not found")

    updated = await OutboxEvent.filter(id=event.id, status__in=REQUEUEABLE_STATUSES).update(
        status=OutboxStatus.PENDING,
        next_retry_at=None,
    )
    if updated != 1:
        raise ValueError(f"Outbox event {event_id} is {event.status.value} and cannot be requeued")

    log.info("Outbox event %s requeued by operator (retry_count=%d)", event_id, event.retry_count)
    await event.refresh_from_db()
    return event
