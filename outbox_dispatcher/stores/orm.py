"""
Tortoise ORM implementations of the dispatcher stores.

Lease and cursor writes are conditional UPDATEs filtered on the values that
were read, and the number of affected rows decides whether the write won.
Connection-level failures surface as StoreUnavailableError.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, List, Optional

from tortoise.exceptions import DBConnectionError, IntegrityError, NotExistOrMultiple, OperationalError
from tortoise.expressions import Q

from outbox_dispatcher.core.errors import StoreUnavailableError
from outbox_dispatcher.events.outbox_utility import create_outbox_record, ensure_partition_heads
from outbox_dispatcher.models.cursor import DispatchCursor
from outbox_dispatcher.models.dead_letter import DeadLetterEntry
from outbox_dispatcher.models.outbox import OutboxRecord, PartitionHead
from outbox_dispatcher.models.ownership import InstanceHeartbeat, OwnershipLease
from outbox_dispatcher.stores.base import (
    CursorPosition,
    DeadLetter,
    DeadLetterFilter,
    InstanceRecord,
    Lease,
    OutboxEntry,
    RetryState,
    StoreBundle,
    check_advance,
    check_retry_writer,
)

log = logging.getLogger("outbox_dispatcher.stores")

# Conditional writes are retried this many times when another writer got in between
CAS_ATTEMPTS = 5

CLEARED_RETRY = {"retry_record_id": None, "attempt_count": 0, "next_eligible_at": None, "last_error": None}


@asynccontextmanager
async def store_errors(operation: str):
    """Translates database outages into StoreUnavailableError. Constraint violations and lookup misses pass through."""
    try:
        yield
    except (IntegrityError, NotExistOrMultiple):
        raise
    except (DBConnectionError, OperationalError, OSError) as e:
        log.error(f"Store failure during {operation}: {e}")
        raise StoreUnavailableError(operation, e) from e


def _to_entry(row: OutboxRecord) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        partition_key=row.partition_key,
        partition_id=row.partition_id,
        payload=bytes(row.payload),
        created_at=row.created_at,
        event_type=row.event_type,
        dispatched_at=row.dispatched_at,
    )


def _to_lease(row: OwnershipLease) -> Lease:
    return Lease(
        partition_id=row.partition_id,
        instance_id=row.instance_id,
        fencing_token=row.fencing_token,
        expires_at=row.expires_at,
    )


def _to_position(row: DispatchCursor) -> CursorPosition:
    return CursorPosition(
        partition_id=row.partition_id,
        consumer_id=row.consumer_id,
        last_dispatched_id=row.last_dispatched_id,
        fencing_token=row.fencing_token,
        epoch=row.epoch,
    )


def _to_dead_letter(row: DeadLetterEntry) -> DeadLetter:
    return DeadLetter(
        id=row.id,
        record_id=row.record_id,
        partition_id=row.partition_id,
        partition_key=row.partition_key,
        consumer_id=row.consumer_id,
        event_type=row.event_type,
        payload=bytes(row.payload),
        failure_reason=row.failure_reason,
        attempt_count=row.attempt_count,
        last_attempt_at=row.last_attempt_at,
        created_at=row.created_at,
        drained_at=row.drained_at,
    )


class TortoiseOutboxLog:
    def __init__(self, partition_count: int):
        self.partition_count = partition_count

    async def setup(self) -> None:
        async with store_errors("outbox.setup"):
            await ensure_partition_heads(self.partition_count)

    async def append(self, partition_key: str, payload: Any, event_type: Optional[str] = None, conn: Any = None) -> int:
        async with store_errors("outbox.append"):
            record = await create_outbox_record(
                partition_key, payload, event_type=event_type, conn=conn, partition_count=self.partition_count
            )
        return record.id

    async def read_from(self, partition_id: int, after_id: int, limit: int) -> List[OutboxEntry]:
        async with store_errors("outbox.read_from"):
            rows = await OutboxRecord.filter(partition_id=partition_id, id__gt=after_id).order_by("id").limit(limit)
        return [_to_entry(row) for row in rows]

    async def head_id(self, partition_id: int) -> int:
        async with store_errors("outbox.head_id"):
            head = await PartitionHead.get_or_none(partition_id=partition_id)
        return head.last_id if head else 0

    async def first_id(self, partition_id: int) -> int:
        async with store_errors("outbox.first_id"):
            row = await OutboxRecord.filter(partition_id=partition_id).order_by("id").first()
        return row.id if row else 0

    async def mark_dispatched(self, record_id: int, at: datetime) -> None:
        async with store_errors("outbox.mark_dispatched"):
            await OutboxRecord.filter(id=record_id, dispatched_at__isnull=True).update(dispatched_at=at)


class TortoiseOwnershipTable:
    async def _row(self, partition_id: int) -> OwnershipLease:
        row, _ = await OwnershipLease.get_or_create(partition_id=partition_id, defaults={"fencing_token": 0})
        return row

    async def list_leases(self) -> List[Lease]:
        async with store_errors("ownership.list"):
            rows = await OwnershipLease.all().order_by("partition_id")
        return [_to_lease(row) for row in rows]

    async def get(self, partition_id: int) -> Optional[Lease]:
        async with store_errors("ownership.get"):
            row = await OwnershipLease.get_or_none(partition_id=partition_id)
        return _to_lease(row) if row else None

    async def acquire(self, partition_id: int, instance_id: str, now: datetime, duration: float) -> Optional[Lease]:
        async with store_errors("ownership.acquire"):
            row = await self._row(partition_id)
            if _to_lease(row).is_valid(now):
                return None

            expires_at = now + timedelta(seconds=duration)
            new_token = row.fencing_token + 1
            # CRITICAL: Only wins if nobody acquired or revoked since we read the row
            updated = await (
                OwnershipLease.filter(partition_id=partition_id, fencing_token=row.fencing_token)
                .filter(Q(instance_id__isnull=True) | Q(expires_at__isnull=True) | Q(expires_at__lte=now))
                .update(instance_id=instance_id, fencing_token=new_token, expires_at=expires_at)
            )
        if updated != 1:
            return None
        return Lease(partition_id, instance_id, new_token, expires_at)

    async def renew(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime, duration: float) -> Optional[Lease]:
        expires_at = now + timedelta(seconds=duration)
        async with store_errors("ownership.renew"):
            updated = await OwnershipLease.filter(
                partition_id=partition_id,
                instance_id=instance_id,
                fencing_token=fencing_token,
                expires_at__gt=now,
            ).update(expires_at=expires_at)
        if updated != 1:
            return None
        return Lease(partition_id, instance_id, fencing_token, expires_at)

    async def release(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        async with store_errors("ownership.release"):
            updated = await OwnershipLease.filter(
                partition_id=partition_id, instance_id=instance_id, fencing_token=fencing_token
            ).update(instance_id=None, expires_at=now)
        return updated == 1

    async def revoke(self, partition_id: int, now: datetime) -> Lease:
        async with store_errors("ownership.revoke"):
            for _ in range(CAS_ATTEMPTS):
                row = await self._row(partition_id)
                new_token = row.fencing_token + 1
                updated = await OwnershipLease.filter(
                    partition_id=partition_id, fencing_token=row.fencing_token
                ).update(instance_id=None, fencing_token=new_token, expires_at=now)
                if updated == 1:
                    return Lease(partition_id, None, new_token, now)
        raise StoreUnavailableError("ownership.revoke", RuntimeError(f"lease row {partition_id} kept changing"))

    async def is_current(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        async with store_errors("ownership.is_current"):
            return await OwnershipLease.filter(
                partition_id=partition_id,
                instance_id=instance_id,
                fencing_token=fencing_token,
                expires_at__gt=now,
            ).exists()


class TortoiseInstanceRegistry:
    async def heartbeat(self, instance_id: str, now: datetime) -> InstanceRecord:
        async with store_errors("registry.heartbeat"):
            updated = await InstanceHeartbeat.filter(instance_id=instance_id).update(last_heartbeat_at=now)
            if updated == 0:
                try:
                    await InstanceHeartbeat.create(instance_id=instance_id, started_at=now, last_heartbeat_at=now)
                except IntegrityError:
                    await InstanceHeartbeat.filter(instance_id=instance_id).update(last_heartbeat_at=now)
            row = await InstanceHeartbeat.get(instance_id=instance_id)
        return InstanceRecord(row.instance_id, row.started_at, row.last_heartbeat_at)

    async def deregister(self, instance_id: str) -> None:
        async with store_errors("registry.deregister"):
            await InstanceHeartbeat.filter(instance_id=instance_id).delete()

    async def list_instances(self) -> List[InstanceRecord]:
        async with store_errors("registry.list"):
            rows = await InstanceHeartbeat.all().order_by("instance_id")
        return [InstanceRecord(row.instance_id, row.started_at, row.last_heartbeat_at) for row in rows]


class TortoiseCursorStore:
    async def get(self, partition_id: int, consumer_id: str) -> CursorPosition:
        async with store_errors("cursor.get"):
            row = await DispatchCursor.get_or_none(partition_id=partition_id, consumer_id=consumer_id)
        return _to_position(row) if row else CursorPosition(partition_id, consumer_id)

    async def advance(
        self,
        partition_id: int,
        consumer_id: str,
        new_id: int,
        fencing_token: int = 0,
        epoch: Optional[int] = None,
        replay: bool = False,
    ) -> CursorPosition:
        async with store_errors("cursor.advance"):
            for _ in range(CAS_ATTEMPTS):
                row = await DispatchCursor.get_or_none(partition_id=partition_id, consumer_id=consumer_id)
                current = _to_position(row) if row else CursorPosition(partition_id, consumer_id)

                if replay:
                    target = CursorPosition(partition_id, consumer_id, new_id, current.fencing_token, current.epoch + 1)
                else:
                    check_advance(current, new_id, fencing_token, epoch)
                    target = CursorPosition(partition_id, consumer_id, new_id, fencing_token, current.epoch)

                if row is None:
                    try:
                        await DispatchCursor.create(
                            partition_id=partition_id,
                            consumer_id=consumer_id,
                            last_dispatched_id=target.last_dispatched_id,
                            fencing_token=target.fencing_token,
                            epoch=target.epoch,
                        )
                        return target
                    except IntegrityError:
                        continue

                # Compare-and-swap against exactly what was read
                updated = await DispatchCursor.filter(
                    id=row.id,
                    last_dispatched_id=current.last_dispatched_id,
                    fencing_token=current.fencing_token,
                    epoch=current.epoch,
                ).update(
                    last_dispatched_id=target.last_dispatched_id,
                    fencing_token=target.fencing_token,
                    epoch=target.epoch,
                    **CLEARED_RETRY,
                )
                if updated == 1:
                    return target
        raise StoreUnavailableError(
            "cursor.advance", RuntimeError(f"cursor ({partition_id}, {consumer_id}) kept changing")
        )

    async def list_positions(self, partition_id: Optional[int] = None, consumer_id: Optional[str] = None) -> List[CursorPosition]:
        query = DispatchCursor.all()
        if partition_id is not None:
            query = query.filter(partition_id=partition_id)
        if consumer_id is not None:
            query = query.filter(consumer_id=consumer_id)
        async with store_errors("cursor.list"):
            rows = await query.order_by("partition_id", "consumer_id")
        return [_to_position(row) for row in rows]

    async def get_retry(self, partition_id: int, consumer_id: str) -> Optional[RetryState]:
        async with store_errors("cursor.get_retry"):
            row = await DispatchCursor.get_or_none(partition_id=partition_id, consumer_id=consumer_id)
        if row is None or row.retry_record_id is None:
            return None
        return RetryState(row.retry_record_id, row.attempt_count, row.next_eligible_at, row.last_error)

    async def save_retry(self, partition_id: int, consumer_id: str, retry: RetryState, fencing_token: int = 0) -> None:
        values = {
            "retry_record_id": retry.record_id,
            "attempt_count": retry.attempt_count,
            "next_eligible_at": retry.next_eligible_at,
            "last_error": retry.last_error,
        }
        async with store_errors("cursor.save_retry"):
            for _ in range(CAS_ATTEMPTS):
                row = await DispatchCursor.get_or_none(partition_id=partition_id, consumer_id=consumer_id)
                if row is None:
                    try:
                        await DispatchCursor.create(partition_id=partition_id, consumer_id=consumer_id, **values)
                        return
                    except IntegrityError:
                        continue

                check_retry_writer(_to_position(row), fencing_token)
                updated = await DispatchCursor.filter(
                    id=row.id,
                    last_dispatched_id=row.last_dispatched_id,
                    fencing_token=row.fencing_token,
                    epoch=row.epoch,
                ).update(**values)
                if updated == 1:
                    return
        raise StoreUnavailableError(
            "cursor.save_retry", RuntimeError(f"cursor ({partition_id}, {consumer_id}) kept changing")
        )


class TortoiseDeadLetterSink:
    def _query(self, criteria: DeadLetterFilter):
        query = DeadLetterEntry.all()
        if criteria.partition_id is not None:
            query = query.filter(partition_id=criteria.partition_id)
        if criteria.consumer_id is not None:
            query = query.filter(consumer_id=criteria.consumer_id)
        if criteria.partition_key is not None:
            query = query.filter(partition_key=criteria.partition_key)
        if not criteria.include_drained:
            query = query.filter(drained_at__isnull=True)
        return query.order_by("id").limit(criteria.limit)

    async def put(self, entry: DeadLetter) -> DeadLetter:
        async with store_errors("dead_letters.put"):
            row = await DeadLetterEntry.create(
                record_id=entry.record_id,
                partition_id=entry.partition_id,
                partition_key=entry.partition_key,
                consumer_id=entry.consumer_id,
                event_type=entry.event_type,
                payload=entry.payload,
                failure_reason=entry.failure_reason,
                attempt_count=entry.attempt_count,
                last_attempt_at=entry.last_attempt_at,
            )
        return _to_dead_letter(row)

    async def find(self, criteria: DeadLetterFilter) -> List[DeadLetter]:
        async with store_errors("dead_letters.find"):
            rows = await self._query(criteria)
        return [_to_dead_letter(row) for row in rows]

    async def drain(self, criteria: DeadLetterFilter, now: datetime) -> List[DeadLetter]:
        pending = DeadLetterFilter(
            partition_id=criteria.partition_id,
            consumer_id=criteria.consumer_id,
            partition_key=criteria.partition_key,
            include_drained=False,
            limit=criteria.limit,
        )
        async with store_errors("dead_letters.drain"):
            rows = await self._query(pending)
            drained = []
            for row in rows:
                # Skip rows another operator drained in the meantime
                updated = await DeadLetterEntry.filter(id=row.id, drained_at__isnull=True).update(drained_at=now)
                if updated == 1:
                    row.drained_at = now
                    drained.append(_to_dead_letter(row))
        return drained

    async def count(self, partition_id: Optional[int] = None) -> int:
        query = DeadLetterEntry.filter(drained_at__isnull=True)
        if partition_id is not None:
            query = query.filter(partition_id=partition_id)
        async with store_errors("dead_letters.count"):
            return await query.count()

    async def purge_drained(self, older_than: datetime) -> int:
        async with store_errors("dead_letters.purge"):
            return await DeadLetterEntry.filter(drained_at__isnull=False, drained_at__lt=older_than).delete()


async def tortoise_stores(partition_count: int) -> StoreBundle:
    """Builds the durable store bundle. Tortoise must already be initialized (see core.db.init_db)."""
    outbox = TortoiseOutboxLog(partition_count)
    await outbox.setup()
    return StoreBundle(
        outbox=outbox,
        ownership=TortoiseOwnershipTable(),
        registry=TortoiseInstanceRegistry(),
        cursors=TortoiseCursorStore(),
        dead_letters=TortoiseDeadLetterSink(),
    )
