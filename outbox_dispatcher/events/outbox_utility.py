import json
from typing import Any, Optional
from tortoise.transactions import in_transaction
from outbox_dispatcher.core.config import PARTITION_COUNT
from outbox_dispatcher.models.outbox import OutboxRecord, PartitionHead
from outbox_dispatcher.services.partitioning import partition_for


def encode_payload(payload: Any) -> bytes:
    """Normalizes an event payload to the opaque bytes stored in the outbox."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


async def create_outbox_record(
    partition_key: str,
    payload: Any,
    event_type: Optional[str] = None,
    conn: Any = None,
    partition_count: int = PARTITION_COUNT,
) -> OutboxRecord:
    """
    Creates a new Outbox record using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the record is created atomically with the business data.
    Without it the record gets its own short transaction.
    """
    partition_id = partition_for(partition_key, partition_count)
    body = encode_payload(payload)

    if conn is None:
        async with in_transaction() as own_conn:
            return await _insert_in_partition_order(partition_key, partition_id, body, event_type, own_conn)
    return await _insert_in_partition_order(partition_key, partition_id, body, event_type, conn)


async def _insert_in_partition_order(
    partition_key: str, partition_id: int, body: bytes, event_type: Optional[str], conn: Any
) -> OutboxRecord:
    # CRITICAL: Lock the partition head until the surrounding transaction ends.
    # Two writers of the same partition then commit in id order, so a worker
    # reading past id N can never later find an uncommitted id below N.
    heads = await PartitionHead.filter(partition_id=partition_id).using_db(conn).select_for_update()
    head = heads[0] if heads else await PartitionHead.create(partition_id=partition_id, using_db=conn)

    record = await OutboxRecord.create(
        partition_key=partition_key,
        partition_id=partition_id,
        event_type=event_type,
        payload=body,
        using_db=conn,
    )

    head.last_id = record.id
    await head.save(update_fields=["last_id"], using_db=conn)
    return record


async def ensure_partition_heads(partition_count: int = PARTITION_COUNT) -> None:
    """Creates the head row of every partition up front so appends never race on creating one."""
    existing = set(await PartitionHead.all().values_list("partition_id", flat=True))
    for partition_id in range(partition_count):
        if partition_id not in existing:
            await PartitionHead.get_or_create(partition_id=partition_id)
