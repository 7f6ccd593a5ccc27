"""
Store contracts for the dispatcher.

Every piece of shared coordination state (outbox log, ownership leases,
instance heartbeats, cursors, dead letters) lives behind one of these
protocols. Implementations must make lease and cursor writes conditional
(compare-and-swap on the values read); the dispatcher never relies on
in-process locks for correctness across instances.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Protocol, runtime_checkable

from outbox_dispatcher.core.errors import (
    CursorEpochMismatchError,
    CursorRegressionError,
    StaleFencingTokenError,
)


@dataclass(frozen=True)
class OutboxEntry:
    """One pending unit of work as read from the outbox log."""
    id: int
    partition_key: str
    partition_id: int
    payload: bytes
    created_at: datetime
    event_type: Optional[str] = None
    dispatched_at: Optional[datetime] = None


@dataclass(frozen=True)
class Lease:
    partition_id: int
    instance_id: Optional[str]
    fencing_token: int
    expires_at: Optional[datetime]

    def is_valid(self, now: datetime) -> bool:
        return self.instance_id is not None and self.expires_at is not None and self.expires_at > now

    def held_by(self, instance_id: str, now: datetime) -> bool:
        return self.is_valid(now) and self.instance_id == instance_id


@dataclass(frozen=True)
class InstanceRecord:
    instance_id: str
    started_at: datetime
    last_heartbeat_at: datetime


@dataclass(frozen=True)
class CursorPosition:
    partition_id: int
    consumer_id: str
    last_dispatched_id: int = 0
    fencing_token: int = 0
    epoch: int = 0


@dataclass
class RetryState:
    """Retry bookkeeping for the record at the head of a (partition, consumer) cursor."""
    record_id: int
    attempt_count: int = 0
    next_eligible_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class DeadLetter:
    record_id: int
    partition_id: int
    partition_key: str
    consumer_id: str
    payload: bytes
    failure_reason: str
    attempt_count: int
    last_attempt_at: datetime
    event_type: Optional[str] = None
    created_at: Optional[datetime] = None
    drained_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class DeadLetterFilter:
    partition_id: Optional[int] = None
    consumer_id: Optional[str] = None
    partition_key: Optional[str] = None
    include_drained: bool = False
    limit: int = 100

    def matches(self, entry: DeadLetter) -> bool:
        if self.partition_id is not None and entry.partition_id != self.partition_id:
            return False
        if self.consumer_id is not None and entry.consumer_id != self.consumer_id:
            return False
        if self.partition_key is not None and entry.partition_key != self.partition_key:
            return False
        if not self.include_drained and entry.drained_at is not None:
            return False
        return True


@runtime_checkable
class OutboxLog(Protocol):
    partition_count: int

    async def append(self, partition_key: str, payload: Any, event_type: Optional[str] = None, conn: Any = None) -> int:
        """Insert a record inside the caller's transaction and return its log-assigned id."""
        ...

    async def read_from(self, partition_id: int, after_id: int, limit: int) -> List[OutboxEntry]:
        """Records of one partition with id > after_id, ascending by id."""
        ...

    async def head_id(self, partition_id: int) -> int:
        """Highest id appended to the partition, 0 when empty."""
        ...

    async def first_id(self, partition_id: int) -> int:
        """Lowest id still retained in the partition, 0 when empty."""
        ...

    async def mark_dispatched(self, record_id: int, at: datetime) -> None:
        ...


@runtime_checkable
class OwnershipTable(Protocol):
    async def list_leases(self) -> List[Lease]:
        ...

    async def get(self, partition_id: int) -> Optional[Lease]:
        ...

    async def acquire(self, partition_id: int, instance_id: str, now: datetime, duration: float) -> Optional[Lease]:
        """Claim a partition with no valid lease. Issues a fresh (incremented) fencing token."""
        ...

    async def renew(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime, duration: float) -> Optional[Lease]:
        """Extend an unexpired lease held with this exact token. None when the lease is gone."""
        ...

    async def release(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        ...

    async def revoke(self, partition_id: int, now: datetime) -> Lease:
        """Forcefully invalidate the current holder by bumping the fencing token."""
        ...

    async def is_current(self, partition_id: int, instance_id: str, fencing_token: int, now: datetime) -> bool:
        ...


@runtime_checkable
class InstanceRegistry(Protocol):
    async def heartbeat(self, instance_id: str, now: datetime) -> InstanceRecord:
        ...

    async def deregister(self, instance_id: str) -> None:
        ...

    async def list_instances(self) -> List[InstanceRecord]:
        ...


@runtime_checkable
class CursorStore(Protocol):
    async def get(self, partition_id: int, consumer_id: str) -> CursorPosition:
        ...

    async def advance(
        self,
        partition_id: int,
        consumer_id: str,
        new_id: int,
        fencing_token: int = 0,
        epoch: Optional[int] = None,
        replay: bool = False,
    ) -> CursorPosition:
        """Moves the cursor to `new_id` and clears its retry bookkeeping."""
        ...

    async def list_positions(self, partition_id: Optional[int] = None, consumer_id: Optional[str] = None) -> List[CursorPosition]:
        ...

    async def get_retry(self, partition_id: int, consumer_id: str) -> Optional[RetryState]:
        ...

    async def save_retry(self, partition_id: int, consumer_id: str, retry: RetryState, fencing_token: int = 0) -> None:
        """Raises StaleFencingTokenError when a newer owner has already written this cursor."""
        ...


@runtime_checkable
class DeadLetterSink(Protocol):
    async def put(self, entry: DeadLetter) -> DeadLetter:
        ...

    async def find(self, criteria: DeadLetterFilter) -> List[DeadLetter]:
        ...

    async def drain(self, criteria: DeadLetterFilter, now: datetime) -> List[DeadLetter]:
        """Return matching undrained entries and stamp them as drained. Nothing is deleted."""
        ...

    async def count(self, partition_id: Optional[int] = None) -> int:
        """Undrained entries, optionally for one partition."""
        ...

    async def purge_drained(self, older_than: datetime) -> int:
        ...


@dataclass
class StoreBundle:
    outbox: OutboxLog
    ownership: OwnershipTable
    registry: InstanceRegistry
    cursors: CursorStore
    dead_letters: DeadLetterSink


def check_advance(current: CursorPosition, new_id: int, fencing_token: int, epoch: Optional[int]) -> None:
    """
    Shared validation of a non-replay cursor advance. Raises on regression,
    a lower fencing token, or an epoch changed by a replay.
    """
    if epoch is not None and epoch != current.epoch:
        raise CursorEpochMismatchError(
            f"Cursor ({current.partition_id}, {current.consumer_id}) was reset: epoch {epoch} != {current.epoch}"
        )
    if fencing_token < current.fencing_token:
        raise StaleFencingTokenError(
            f"Cursor ({current.partition_id}, {current.consumer_id}) holds token {current.fencing_token}, "
            f"write carried {fencing_token}"
        )
    if new_id < current.last_dispatched_id:
        raise CursorRegressionError(
            f"Cursor ({current.partition_id}, {current.consumer_id}) cannot move back from "
            f"{current.last_dispatched_id} to {new_id} outside a replay"
        )


def check_retry_writer(current: CursorPosition, fencing_token: int) -> None:
    if fencing_token < current.fencing_token:
        raise StaleFencingTokenError(
            f"Cursor ({current.partition_id}, {current.consumer_id}) holds token {current.fencing_token}, "
            f"retry bookkeeping write carried {fencing_token}"
        )
