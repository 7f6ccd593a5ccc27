from tortoise import fields, models


class DeadLetterEntry(models.Model):
    """
    Copy of an outbox record that could not be delivered within policy.
    Rows are never deleted automatically; drained_at marks operator handling.
    """
    id = fields.IntField(primary_key=True)
    record_id = fields.BigIntField()
    partition_id = fields.IntField()
    partition_key = fields.CharField(max_length=255)
    consumer_id = fields.CharField(max_length=128)
    event_type = fields.CharField(max_length=128, null=True)
    payload = fields.BinaryField()
    failure_reason = fields.TextField()
    attempt_count = fields.IntField()
    last_attempt_at = fields.DatetimeField()
    created_at = fields.DatetimeField(auto_now_add=True)
    drained_at = fields.DatetimeField(null=True)

    class Meta:
        table = "dead_letters"
        indexes = [
            ("partition_id", "drained_at"),
            ("consumer_id",),
        ]
