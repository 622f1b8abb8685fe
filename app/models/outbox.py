from enum import Enum

from tortoise import fields, models

from app.core.config import LAST_ERROR_COLUMN_LENGTH


class OutboxStatus(str, Enum):
    PENDING = "pending"  # Written with the business transaction, not yet relayed
    PROCESSING = "processing"  # Claimed by a relay; next_retry_at holds the lease expiry
    PUBLISHED = "published"  # Confirmed by the broker, never selected again
    FAILED = "failed"  # Publish failed, due again at next_retry_at
    DEAD = "dead"  # Relay retry cap reached, needs a manual requeue


class OutboxEvent(models.Model):
    """
    The Outbox table stores integration events atomically with the business transaction.
    This is the core of the Transactional Outbox Pattern.
    Rows are only mutated by the relay and are never deleted (kept for audit/replay).
    """
    id = fields.BigIntField(pk=True)  # Storage key; event_id is the end-to-end correlation id
    event_id = fields.CharField(max_length=100, unique=True)
    event_type = fields.CharField(max_length=100)  # e.g., 'user.registered', also the routing key
    aggregate_id = fields.CharField(max_length=100)
    aggregate_type = fields.CharField(max_length=100)  # e.g., 'User'
    payload = fields.JSONField()  # The serialized domain event, opaque to the relay
    status = fields.CharEnumField(OutboxStatus, max_length=50, default=OutboxStatus.PENDING)
    created_at = fields.DatetimeField(auto_now_add=True)
    processed_at = fields.DatetimeField(null=True)
    published_at = fields.DatetimeField(null=True)
    retry_count = fields.IntField(default=0)
    last_error = fields.CharField(max_length=LAST_ERROR_COLUMN_LENGTH, null=True)
    next_retry_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox_events"
        indexes = [
            ("status", "created_at"),     # Pending rows in creation order
            ("status", "next_retry_at"),  # Failed rows that are due
        ]

    def __str__(self) -> str:
        return f"{self.event_type} ({self.event_id}) [{self.status}]"
