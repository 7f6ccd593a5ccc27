import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from outbox_dispatcher.core.config import DispatcherConfig
from outbox_dispatcher.core.errors import UnknownPartitionError
from outbox_dispatcher.services.partition_assigner import Liveness, PartitionAssigner, utcnow
from outbox_dispatcher.services.replay import ReplayController, ReplayResult
from outbox_dispatcher.stores.base import DeadLetter, DeadLetterFilter, StoreBundle

log = logging.getLogger("outbox_dispatcher.admin")


@dataclass
class ConsumerLag:
    consumer_id: str
    last_dispatched_id: int
    lag: int
    epoch: int = 0


@dataclass
class PartitionStatus:
    partition_id: int
    head_id: int
    owner: Optional[str]
    fencing_token: int
    lease_expires_at: Optional[datetime]
    dead_letters: int
    consumers: List[ConsumerLag] = field(default_factory=list)


@dataclass
class InstanceStatus:
    instance_id: str
    started_at: datetime
    last_heartbeat_at: datetime
    liveness: Liveness
    partitions: List[int] = field(default_factory=list)


class AdminService:
    """Operator commands: status, forced rebalance, replay and dead-letter handling."""

    def __init__(
        self,
        stores: StoreBundle,
        config: DispatcherConfig,
        consumers: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stores = stores
        self.config = config
        self.consumers = sorted(set(consumers))
        self._clock = clock
        self.assigner = PartitionAssigner(stores.ownership, stores.registry, config, clock=clock)
        self.replay_controller = ReplayController(stores)

    def _partitions(self, partition_id: Optional[int]) -> List[int]:
        if partition_id is None:
            return list(range(self.config.partition_count))
        if not 0 <= partition_id < self.config.partition_count:
            raise UnknownPartitionError(
                f"Partition {partition_id} does not exist (valid range 0..{self.config.partition_count - 1})."
            )
        return [partition_id]

    async def status(self, partition_id: Optional[int] = None, consumer_id: Optional[str] = None) -> List[PartitionStatus]:
        """Per partition: head id, current lease, dead-letter count and lag (head - cursor) per consumer."""
        now = self._clock()
        statuses = []
        for pid in self._partitions(partition_id):
            head = await self.stores.outbox.head_id(pid)
            lease = await self.stores.ownership.get(pid)
            valid = lease is not None and lease.is_valid(now)

            positions = {p.consumer_id: p for p in await self.stores.cursors.list_positions(partition_id=pid)}
            consumer_ids = set(positions) | set(self.consumers)
            if consumer_id is not None:
                consumer_ids = {consumer_id}

            lags = []
            for cid in sorted(consumer_ids):
                position = positions.get(cid)
                last_id = position.last_dispatched_id if position else 0
                lags.append(
                    ConsumerLag(
                        consumer_id=cid,
                        last_dispatched_id=last_id,
                        lag=max(head - last_id, 0),
                        epoch=position.epoch if position else 0,
                    )
                )

            statuses.append(
                PartitionStatus(
                    partition_id=pid,
                    head_id=head,
                    owner=lease.instance_id if valid else None,
                    fencing_token=lease.fencing_token if lease else 0,
                    lease_expires_at=lease.expires_at if valid else None,
                    dead_letters=await self.stores.dead_letters.count(partition_id=pid),
                    consumers=lags,
                )
            )
        return statuses

    async def rebalance(self) -> Dict[int, str]:
        desired = await self.assigner.force_rebalance()
        log.info(f"Forced rebalance over {len(set(desired.values()))} live instance(s).")
        return desired

    async def replay(
        self,
        consumer_id: str,
        partition_id: Optional[int] = None,
        all_partitions: bool = False,
        to_id: Optional[int] = None,
        to_beginning: bool = False,
    ) -> ReplayResult:
        return await self.replay_controller.reset(
            consumer_id,
            partition_id=partition_id,
            all_partitions=all_partitions,
            to_id=to_id,
            to_beginning=to_beginning,
        )

    async def instances(self) -> List[InstanceStatus]:
        now = self._clock()
        liveness = await self.assigner.liveness()
        owned: Dict[str, List[int]] = {}
        for lease in await self.stores.ownership.list_leases():
            if lease.is_valid(now):
                owned.setdefault(lease.instance_id, []).append(lease.partition_id)

        return [
            InstanceStatus(
                instance_id=record.instance_id,
                started_at=record.started_at,
                last_heartbeat_at=record.last_heartbeat_at,
                liveness=liveness.get(record.instance_id, Liveness.EXPIRED),
                partitions=sorted(owned.get(record.instance_id, [])),
            )
            for record in await self.stores.registry.list_instances()
        ]

    async def list_dead_letters(self, criteria: DeadLetterFilter) -> List[DeadLetter]:
        return await self.stores.dead_letters.find(criteria)

    async def drain_dead_letters(self, criteria: DeadLetterFilter) -> List[DeadLetter]:
        """Hands matching entries to the operator and stamps them as drained. Nothing is deleted."""
        drained = await self.stores.dead_letters.drain(criteria, self._clock())
        log.info(f"Drained {len(drained)} dead letter(s).")
        return drained

    async def purge_dead_letters(self, retention_days: Optional[int] = None) -> int:
        """Deletes drained entries older than the retention window. Undrained entries are always kept."""
        days = self.config.dead_letter_retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError("retention_days cannot be negative.")
        purged = await self.stores.dead_letters.purge_drained(self._clock() - timedelta(days=days))
        log.info(f"Purged {purged} drained dead letter(s) older than {days} day(s).")
        return purged
