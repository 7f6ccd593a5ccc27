from tortoise import fields, models


class OwnershipLease(models.Model):
    """Which dispatcher instance owns a partition, until when, and under which fencing token."""
    partition_id = fields.IntField(primary_key=True, generated=False)
    instance_id = fields.CharField(max_length=128, null=True) # NULL once released or revoked
    fencing_token = fields.BigIntField(default=0) # Only ever increases
    expires_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "ownership_leases"
        indexes = [
            ("instance_id",),
        ]


class InstanceHeartbeat(models.Model):
    """Heartbeat row of a running dispatcher process."""
    instance_id = fields.CharField(max_length=128, primary_key=True)
    started_at = fields.DatetimeField()
    last_heartbeat_at = fields.DatetimeField()

    class Meta:
        table = "dispatcher_instances"
