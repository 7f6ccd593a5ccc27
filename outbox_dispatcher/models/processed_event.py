from tortoise import fields, models
import uuid


class ProcessedEvent(models.Model):
    """
    Table used for Idempotency in Consumers. Stores the outbox record id a
    consumer already handled so redeliveries become no-ops.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    consumer_id = fields.CharField(max_length=128)
    event_id = fields.CharField(max_length=128)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "processed_events"
        unique_together = (("consumer_id", "event_id"),)
