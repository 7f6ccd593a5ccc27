from tortoise import fields, models


class DispatchCursor(models.Model):
    """Last successfully dispatched outbox id per (partition, consumer)."""
    id = fields.IntField(primary_key=True)
    partition_id = fields.IntField()
    consumer_id = fields.CharField(max_length=128)
    last_dispatched_id = fields.BigIntField(default=0)
    fencing_token = fields.BigIntField(default=0) # Token of the last writer
    epoch = fields.IntField(default=0) # Bumped by every replay reset
    # Retry bookkeeping of the head-of-line record, cleared by every advance
    retry_record_id = fields.BigIntField(null=True)
    attempt_count = fields.IntField(default=0)
    next_eligible_at = fields.DatetimeField(null=True)
    last_error = fields.TextField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "dispatch_cursors"
        unique_together = (("partition_id", "consumer_id"),)
