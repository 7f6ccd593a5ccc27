"""
In-memory stores for tests and single-process use.

Every method runs without awaiting in the middle of a read-modify-write, so
within one event loop each call is atomic, which is what the CAS contract of
the durable stores guarantees across processes.
"""
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from outbox_dispatcher.events.outbox_utility import encode_payload
from outbox_dispatcher.services.partitioning import partition_for
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


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryOutboxLog:
    def __init__(self, partition_count: int, clock: Callable[[], datetime] = _utcnow):
        self.partition_count = partition_count
        self._clock = clock
        self._ids = itertools.count(1)
        self._partitions: Dict[int, List[OutboxEntry]] = {}
        self._by_id: Dict[int, Tuple[int, int]] = {}

    async def append(self, partition_key: str, payload: Any, event_type: Optional[str] = None, conn: Any = None) -> int:
        partition_id = partition_for(partition_key, self.partition_count)
        entry = OutboxEntry(
            id=next(self._ids),
            partition_key=partition_key,
            partition_id=partition_id,
            payload=encode_payload(payload),
            created_at=self._clock(),
            event_type=event_type,
        )
        records = self._partitions.setdefault(partition_id, [])
        records.append(entry)
        self._by_id[entry.id] = (partition_id, len(records) - 1)
        return entry.id

    async def read_from(self, partition_id: int, after_id: int, limit: int) -> List[OutboxEntry]:
        records = self._partitions.get(partition_id, [])
        return [record for record in records if record.id > after_id][:limit]

    async def head_id(self, partition_id: int) -> int:
        records = self._partitions.get(partition_id)
        return records[-1].id if records else 0

    async def first_id(self, partition_id: int) -> int:
        records = self._partitions.get(partition_id)
        return records[0].id if records else 0

    async def mark_dispatched(self, record_id: int, at: datetime) -> None:
        location = self._by_id.get(record_id)
        if location is None:
            return
        partition_id, index = location
        record = self._partitions[partition_id][index]
        if record.dispatched_at is None:
            self._partitions[partition_id][index] = replace(record, dispatched_at=at)

    def truncate_before(self, partition_id: int, record_id: int) -> None:
        """Drops records below record_id, standing in for external retention housekeeping."""
        kept = [record for record in self._partitions.get(partition_id, []) if record.id >= record_id]
        self._partitions[partition_id] = kept
        self._by_id = {
            entry.id: (pid, index)
            for pid, entries in self._partitions.items()
            for index, entry in enumerate(entries)
        }


class InMemoryOwnershipTable:
    def __init__(self):
        self._leases: Dict[int, Lease] = {}

    async def list_leases(self) -> List[Lease]:
        return [self._leases[partition_id] for partition_id in sorted(self._leases)]

    async def get(self, partition_id: int) -> Optional[Lease]:
        return self._leases.get(partition_id)

    async def acquire(self, partition_id: int, instance_id: str, now: datetime, duration: float) -> Optional[Lease]:
        current = self._leases.get(partition_id)
        if current is not None and current.is_valid(now):
            return None
        token = current.fencing_token if current else 0
        lease = Lease(partition_id, instance_id, token + 1, now + timedelta(seconds=duration))
        self._leases[partition_id] = lease
        return lease

    async def renew(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime, duration: float) -> Optional[Lease]:
        current = self._leases.get(partition_id)
        if current is None or current.fencing_token != fencing_token or not current.held_by(instance_id, now):
            return None
        lease = replace(current, expires_at=now + timedelta(seconds=duration))
        self._leases[partition_id] = lease
        return lease

    async def release(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        current = self._leases.get(partition_id)
        if current is None or current.instance_id != instance_id or current.fencing_token != fencing_token:
            return False
        self._leases[partition_id] = replace(current, instance_id=None, expires_at=now)
        return True

    async def revoke(self, partition_id: int, now: datetime) -> Lease:
        current = self._leases.get(partition_id)
        token = current.fencing_token if current else 0
        lease = Lease(partition_id, None, token + 1, now)
        self._leases[partition_id] = lease
        return lease

    async def is_current(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        current = self._leases.get(partition_id)
        return current is not None and current.fencing_token == fencing_token and current.held_by(instance_id, now)

    def expire(self, partition_id: int, now: datetime) -> None:
        """Simulates a crashed holder whose lease ran out."""
        current = self._leases.get(partition_id)
        if current is not None:
            self._leases[partition_id] = replace(current, expires_at=now)


class InMemoryInstanceRegistry:
    def __init__(self):
        self._instances: Dict[str, InstanceRecord] = {}

    async def heartbeat(self, instance_id: str, now: datetime) -> InstanceRecord:
        current = self._instances.get(instance_id)
        started_at = current.started_at if current else now
        record = InstanceRecord(instance_id=instance_id, started_at=started_at, last_heartbeat_at=now)
        self._instances[instance_id] = record
        return record

    async def deregister(self, instance_id: str) -> None:
        self._instances.pop(instance_id, None)

    async def list_instances(self) -> List[InstanceRecord]:
        return [self._instances[instance_id] for instance_id in sorted(self._instances)]


class InMemoryCursorStore:
    def __init__(self):
        self._positions: Dict[Tuple[int, str], CursorPosition] = {}
        self._retries: Dict[Tuple[int, str], RetryState] = {}

    async def get(self, partition_id: int, consumer_id: str) -> CursorPosition:
        return self._positions.get((partition_id, consumer_id), CursorPosition(partition_id, consumer_id))

    async def advance(
        self,
        partition_id: int,
        consumer_id: str,
        new_id: int,
        fencing_token: int = 0,
        epoch: Optional[int] = None,
        replay: bool = False,
    ) -> CursorPosition:
        current = await self.get(partition_id, consumer_id)
        if replay:
            updated = replace(current, last_dispatched_id=new_id, epoch=current.epoch + 1)
        else:
            check_advance(current, new_id, fencing_token, epoch)
            updated = replace(current, last_dispatched_id=new_id, fencing_token=fencing_token)
        self._positions[(partition_id, consumer_id)] = updated
        self._retries.pop((partition_id, consumer_id), None)
        return updated

    async def list_positions(self, partition_id: Optional[int] = None, consumer_id: Optional[str] = None) -> List[CursorPosition]:
        return [
            position
            for key, position in sorted(self._positions.items())
            if (partition_id is None or key[0] == partition_id) and (consumer_id is None or key[1] == consumer_id)
        ]

    async def get_retry(self, partition_id: int, consumer_id: str) -> Optional[RetryState]:
        retry = self._retries.get((partition_id, consumer_id))
        return replace(retry) if retry else None

    async def save_retry(self, partition_id: int, consumer_id: str, retry: RetryState, fencing_token: int = 0) -> None:
        check_retry_writer(await self.get(partition_id, consumer_id), fencing_token)
        self._retries[(partition_id, consumer_id)] = replace(retry)


class InMemoryDeadLetterSink:
    def __init__(self):
        self._entries: List[DeadLetter] = []
        self._ids = itertools.count(1)

    async def put(self, entry: DeadLetter) -> DeadLetter:
        stored = replace(entry, id=next(self._ids), created_at=entry.created_at or entry.last_attempt_at)
        self._entries.append(stored)
        return stored

    async def find(self, criteria: DeadLetterFilter) -> List[DeadLetter]:
        return [entry for entry in self._entries if criteria.matches(entry)][: criteria.limit]

    async def drain(self, criteria: DeadLetterFilter, now: datetime) -> List[DeadLetter]:
        drained = []
        for index, entry in enumerate(self._entries):
            if len(drained) >= criteria.limit:
                break
            if entry.drained_at is None and criteria.matches(entry):
                self._entries[index] = replace(entry, drained_at=now)
                drained.append(self._entries[index])
        return drained

    async def count(self, partition_id: Optional[int] = None) -> int:
        return sum(
            1
            for entry in self._entries
            if entry.drained_at is None and (partition_id is None or entry.partition_id == partition_id)
        )

    async def purge_drained(self, older_than: datetime) -> int:
        kept = [entry for entry in self._entries if entry.drained_at is None or entry.drained_at >= older_than]
        purged = len(self._entries) - len(kept)
        self._entries = kept
        return purged


def memory_stores(partition_count: int, clock: Callable[[], datetime] = _utcnow) -> StoreBundle:
    return StoreBundle(
        outbox=InMemoryOutboxLog(partition_count, clock=clock),
        ownership=InMemoryOwnershipTable(),
        registry=InMemoryInstanceRegistry(),
        cursors=InMemoryCursorStore(),
        dead_letters=InMemoryDeadLetterSink(),
    )
