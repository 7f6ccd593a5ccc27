from tortoise import fields, models


class OutboxRecord(models.Model):
    """
    The Outbox table stores events atomically with the business transaction.
    Records are immutable apart from dispatched_at.
    """
    id = fields.BigIntField(primary_key=True) # Assigned by the database, orders records within a partition
    partition_key = fields.CharField(max_length=255) # Owning stream, e.g. an aggregate id
    partition_id = fields.IntField() # hash(partition_key) mod PARTITION_COUNT
    event_type = fields.CharField(max_length=128, null=True) # e.g. 'order.placed.v1'
    payload = fields.BinaryField() # Opaque event bytes
    created_at = fields.DatetimeField(auto_now_add=True)
    dispatched_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox_records"
        indexes = [
            ("partition_id", "id"),  # Per-partition reads from a cursor
            ("dispatched_at",),      # Housekeeping of delivered records
        ]


class PartitionHead(models.Model):
    """
    One row per logical partition. Appends lock this row for the rest of the
    business transaction so ids inside a partition commit in id order.
    """
    partition_id = fields.IntField(primary_key=True, generated=False)
    last_id = fields.BigIntField(default=0)

    class Meta:
        table = "partition_heads"
