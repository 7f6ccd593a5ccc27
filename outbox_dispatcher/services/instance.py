import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Mapping

from outbox_dispatcher.core.config import DispatcherConfig
from outbox_dispatcher.core.errors import StoreUnavailableError
from outbox_dispatcher.services.delivery import DeliveryClient
from outbox_dispatcher.services.dispatcher import PartitionWorker
from outbox_dispatcher.services.partition_assigner import PartitionAssigner, utcnow
from outbox_dispatcher.stores.base import Lease, StoreBundle

log = logging.getLogger("outbox_dispatcher.instance")


class DispatcherInstance:
    """
    One dispatcher process: heartbeats, takes part in partition assignment,
    and runs a PartitionWorker task for every partition it currently owns.
    """

    def __init__(
        self,
        instance_id: str,
        consumers: Mapping[str, DeliveryClient],
        stores: StoreBundle,
        config: DispatcherConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.instance_id = instance_id
        self.consumers = dict(consumers)
        self.stores = stores
        self.config = config.validate()
        self._clock = clock
        self.assigner = PartitionAssigner(stores.ownership, stores.registry, self.config, clock=clock)
        self.leases: Dict[int, Lease] = {}
        self.workers: Dict[int, PartitionWorker] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._stop = asyncio.Event()

    @property
    def owned_partitions(self) -> List[int]:
        return sorted(self.leases)

    async def tick(self) -> None:
        """Heartbeat, converge leases on the desired assignment, then align worker tasks."""
        try:
            self.leases = await self.assigner.tick(self.instance_id, self.leases)
        except StoreUnavailableError as e:
            # Workers keep checking their own tokens, so nothing runs past a lost lease
            log.error(f"Instance {self.instance_id} could not complete its heartbeat: {e}")
            return
        await self._reconcile()

    async def _reconcile(self) -> None:
        for partition_id, worker in list(self.workers.items()):
            lease = self.leases.get(partition_id)
            task = self._tasks[partition_id]
            if lease is None or lease.fencing_token != worker.fencing_token or task.done():
                await self._stop_worker(partition_id)

        for partition_id, lease in sorted(self.leases.items()):
            if partition_id not in self.workers:
                self._start_worker(partition_id, lease)

    def _start_worker(self, partition_id: int, lease: Lease) -> None:
        worker = PartitionWorker(partition_id, lease, self.consumers, self.stores, self.config, clock=self._clock)
        self.workers[partition_id] = worker
        self._tasks[partition_id] = asyncio.create_task(worker.run(), name=f"partition-{partition_id}")

    async def _stop_worker(self, partition_id: int) -> None:
        worker = self.workers.pop(partition_id)
        task = self._tasks.pop(partition_id)
        worker.stop()
        done, _ = await asyncio.wait({task}, timeout=self.config.lease_duration)
        if not done:
            log.warning(f"Worker for partition {partition_id} did not stop in time; cancelling it.")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif not task.cancelled() and task.exception() is not None:
            log.error(f"Worker for partition {partition_id} crashed: {task.exception()!r}")

    async def run(self) -> None:
        log.info(f"Dispatcher instance {self.instance_id} starting with consumers {sorted(self.consumers)}.")
        try:
            while not self._stop.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.heartbeat_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        self._stop.set()

    async def shutdown(self) -> None:
        """Stops every worker, then releases all leases and leaves the registry."""
        self._stop.set()
        for partition_id in list(self.workers):
            await self._stop_worker(partition_id)
        try:
            await self.assigner.release_all(self.instance_id, self.leases)
        except StoreUnavailableError as e:
            log.error(f"Instance {self.instance_id} could not release its leases, they will expire: {e}")
        self.leases = {}
