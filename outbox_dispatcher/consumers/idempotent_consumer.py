import logging
from typing import Any, Awaitable, Callable
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction
from outbox_dispatcher.models.processed_event import ProcessedEvent
from outbox_dispatcher.stores.base import OutboxEntry

log = logging.getLogger("outbox_dispatcher.consumer")

TransactionalHandler = Callable[[OutboxEntry, Any], Awaitable[None]]


def deduplicated(consumer_id: str, handler: TransactionalHandler) -> Callable[[OutboxEntry], Awaitable[None]]:
    """
    Wraps a consumer handler so a redelivered record is applied only once.

    The handler runs inside a transaction together with the ProcessedEvent
    insert, keyed by (consumer_id, record id). Redeliveries after a crash,
    a lease handover or a replay become no-ops.
    """

    async def handle(record: OutboxEntry) -> None:
        event_id = str(record.id)

        # Idempotency Check
        if await ProcessedEvent.filter(consumer_id=consumer_id, event_id=event_id).exists():
            log.info(f"{consumer_id}: record {event_id} already processed, skipping.")
            return

        try:
            async with in_transaction() as conn:
                await handler(record, conn)
                await ProcessedEvent.create(consumer_id=consumer_id, event_id=event_id, using_db=conn)
        except IntegrityError:
            # A concurrent delivery of the same record won; our transaction rolled back
            log.info(f"{consumer_id}: record {event_id} was processed concurrently, skipping.")

    return handle
