from tortoise import fields, models


class ProcessedEvent(models.Model):
    """
    Table used for Idempotency in Consumers. Stores the event_id of every applied
    integration event so its side effect is never applied twice.
    Append-only: a row is inserted in the same transaction as the side effect.
    """
    id = fields.BigIntField(pk=True)
    event_id = fields.CharField(max_length=100, unique=True)
    event_type = fields.CharField(max_length=100)
    processed_at = fields.DatetimeField(auto_now_add=True)
    processing_duration_ms = fields.BigIntField(default=0)

    class Meta:
        table = "processed_events"
