import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from outbox_dispatcher.core.config import DispatcherConfig
from outbox_dispatcher.services.partitioning import get_assignment_strategy, partitions_of
from outbox_dispatcher.stores.base import InstanceRecord, InstanceRegistry, Lease, OwnershipTable

log = logging.getLogger("outbox_dispatcher.assigner")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Liveness(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


def classify_instances(instances: Iterable[InstanceRecord], now: datetime, liveness_timeout: float) -> Dict[str, Liveness]:
    """An instance is ACTIVE while its last heartbeat is younger than the liveness timeout."""
    cutoff = now - timedelta(seconds=liveness_timeout)
    return {
        instance.instance_id: Liveness.ACTIVE if instance.last_heartbeat_at > cutoff else Liveness.EXPIRED
        for instance in instances
    }


class PartitionAssigner:
    """
    Distributes the fixed partitions over live dispatcher instances.

    The desired assignment is a pure function of the live instance set, so
    every instance computes the same answer on its own tick. Ownership itself
    only changes through conditional lease writes: an instance gives up what it
    should no longer own and claims what it should own once the previous
    holder released it or its lease expired.
    """

    def __init__(
        self,
        ownership: OwnershipTable,
        registry: InstanceRegistry,
        config: DispatcherConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ownership = ownership
        self.registry = registry
        self.config = config
        self._clock = clock
        self._strategy = get_assignment_strategy(config.assignment_strategy)

    async def liveness(self) -> Dict[str, Liveness]:
        instances = await self.registry.list_instances()
        return classify_instances(instances, self._clock(), self.config.lease_duration)

    async def live_instances(self, include: Optional[str] = None) -> List[str]:
        live = {instance_id for instance_id, state in (await self.liveness()).items() if state == Liveness.ACTIVE}
        if include:
            live.add(include)
        return sorted(live)

    async def desired_assignment(self, include: Optional[str] = None) -> Dict[int, str]:
        live = await self.live_instances(include=include)
        return self._strategy(live, self.config.partition_count)

    async def tick(self, instance_id: str, held: Dict[int, Lease]) -> Dict[int, Lease]:
        """
        One heartbeat of `instance_id`: record liveness, then release, renew and
        acquire leases so that ownership converges on the desired assignment.
        Returns the leases the instance holds afterwards.
        """
        now = self._clock()
        await self.registry.heartbeat(instance_id, now)
        desired = await self.desired_assignment(include=instance_id)
        owned: Dict[int, Lease] = {}

        # 1. Hand back partitions that moved to another instance
        for partition_id, lease in sorted(held.items()):
            if desired.get(partition_id) != instance_id:
                await self.ownership.release(partition_id, instance_id, lease.fencing_token, now)
                log.info(f"Instance {instance_id} released partition {partition_id} (token {lease.fencing_token}).")

        # 2. Renew what we keep, claim what is newly ours
        for partition_id in partitions_of(desired, instance_id):
            lease = held.get(partition_id)
            if lease is not None:
                renewed = await self.ownership.renew(
                    partition_id, instance_id, lease.fencing_token, now, self.config.lease_duration
                )
                if renewed is not None:
                    owned[partition_id] = renewed
                    continue
                log.warning(
                    f"Instance {instance_id} lost lease on partition {partition_id} (token {lease.fencing_token})."
                )

            acquired = await self.ownership.acquire(partition_id, instance_id, now, self.config.lease_duration)
            if acquired is not None:
                owned[partition_id] = acquired
                log.info(
                    f"Instance {instance_id} acquired partition {partition_id} with fencing token {acquired.fencing_token}."
                )
        return owned

    async def force_rebalance(self) -> Dict[int, str]:
        """
        Operator-forced rebalance: revoke every valid lease held by an instance
        that is not the desired owner. The stale holders stop at their next
        fencing check and the desired owners claim the partitions on their
        next tick.
        """
        now = self._clock()
        desired = await self.desired_assignment()
        for lease in await self.ownership.list_leases():
            if lease.is_valid(now) and desired.get(lease.partition_id) != lease.instance_id:
                revoked = await self.ownership.revoke(lease.partition_id, now)
                log.info(
                    f"Revoked partition {lease.partition_id} from {lease.instance_id}; "
                    f"fencing token is now {revoked.fencing_token}."
                )
        return desired

    async def release_all(self, instance_id: str, held: Dict[int, Lease]) -> None:
        """Cooperative shutdown: give every lease back and leave the registry."""
        now = self._clock()
        for partition_id, lease in sorted(held.items()):
            await self.ownership.release(partition_id, instance_id, lease.fencing_token, now)
        await self.registry.deregister(instance_id)
        log.info(f"Instance {instance_id} released {len(held)} partition(s) and deregistered.")
