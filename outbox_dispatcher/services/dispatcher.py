import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from outbox_dispatcher.core.config import DispatcherConfig
from outbox_dispatcher.core.errors import (
    CursorEpochMismatchError,
    CursorRegressionError,
    LeaseLostError,
    StaleFencingTokenError,
    StoreUnavailableError,
)
from outbox_dispatcher.services.delivery import DeliveryClient, DeliveryOutcome, DeliveryResult
from outbox_dispatcher.services.partition_assigner import utcnow
from outbox_dispatcher.stores.base import CursorPosition, DeadLetter, Lease, OutboxEntry, RetryState, StoreBundle

log = logging.getLogger("outbox_dispatcher.worker")


@dataclass
class ConsumerLane:
    """Delivery state of one consumer inside a partition worker."""
    consumer_id: str
    client: DeliveryClient
    retry: Optional[RetryState] = None
    paused_until: Optional[datetime] = None
    restored: bool = False
    delivered: int = 0
    dead_lettered: int = 0

    def is_waiting(self, now: datetime) -> bool:
        if self.paused_until is not None and now < self.paused_until:
            return True
        if self.retry is not None and self.retry.next_eligible_at is not None and now < self.retry.next_eligible_at:
            return True
        return False


class PartitionWorker:
    """
    Delivers one owned partition to every registered consumer, in id order.

    Each poll re-validates the fencing token before reading a batch and before
    every delivery; a stale token stops the worker for good. Failed deliveries
    keep their retry state on the lane instead of sleeping, so a backing-off
    consumer never holds up its siblings. That state is also saved on the
    cursor, and a lane resumes from it after a restart or a lease handover.
    """

    def __init__(
        self,
        partition_id: int,
        lease: Lease,
        consumers: Mapping[str, DeliveryClient],
        stores: StoreBundle,
        config: DispatcherConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.partition_id = partition_id
        self.lease = lease
        self.instance_id = lease.instance_id
        self.lanes = [ConsumerLane(consumer_id, client) for consumer_id, client in sorted(consumers.items())]
        self.stores = stores
        self.config = config
        self._clock = clock
        self._stop = asyncio.Event()
        self.stopped_reason: Optional[str] = None

    @property
    def fencing_token(self) -> int:
        return self.lease.fencing_token

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """Main loop of the worker, until stopped or the lease is lost."""
        log.info(
            f"Worker for partition {self.partition_id} started on {self.instance_id} (token {self.fencing_token})."
        )
        store_failures = 0
        while not self._stop.is_set():
            try:
                settled = await self.poll_once()
                store_failures = 0
            except LeaseLostError as e:
                self.stopped_reason = "lease_lost"
                log.warning(f"{e}. Stopping worker.")
                break
            except StoreUnavailableError as e:
                # Halt this partition until the store answers again
                store_failures += 1
                delay = self.config.backoff.delay_for(store_failures)
                log.error(f"Partition {self.partition_id}: {e}. Retrying in {delay:.1f}s.")
                await self._wait(delay)
                continue

            if settled == 0:
                await self._wait(self._idle_wait())

        if self.stopped_reason is None:
            self.stopped_reason = "stopped"
        log.info(f"Worker for partition {self.partition_id} stopped ({self.stopped_reason}).")

    async def poll_once(self) -> int:
        """
        One poll cycle over all consumer lanes.
        Returns how many records were settled (delivered or dead-lettered).
        """
        settled = 0
        for lane in self.lanes:
            if self._stop.is_set():
                break
            settled += await self._drain_lane(lane)
        return settled

    async def _drain_lane(self, lane: ConsumerLane) -> int:
        if not lane.restored:
            await self._restore_retry(lane)
        if lane.is_waiting(self._clock()):
            return 0

        # 1. Fencing check, then read from the cursor forward
        await self._ensure_lease()
        cursor = await self.stores.cursors.get(self.partition_id, lane.consumer_id)
        records = await self.stores.outbox.read_from(
            self.partition_id, cursor.last_dispatched_id, self.config.batch_size
        )

        settled = 0
        for record in records:
            if self._stop.is_set():
                break
            # 2. A lingering owner must not deliver anything after losing the lease
            await self._ensure_lease()
            result = await self._attempt(lane, record)

            if result.outcome == DeliveryOutcome.SUCCESS:
                cursor = await self._advance(lane, cursor, record)
                if cursor is None:
                    break
                lane.retry = None
                await self._mark_if_settled(record)
                lane.delivered += 1
                settled += 1
                log.debug(f"Delivered record {record.id} of partition {self.partition_id} to {lane.consumer_id}.")
                continue

            if result.outcome == DeliveryOutcome.SATURATED:
                wait = result.retry_after if result.retry_after is not None else self.config.backoff.initial_delay
                wait = min(wait, self.config.max_backpressure_wait)
                lane.paused_until = self._clock() + timedelta(seconds=wait)
                log.info(
                    f"Consumer {lane.consumer_id} is saturated; pausing partition {self.partition_id} for {wait:.1f}s."
                )
                break

            retry = self._record_failure(lane, record, result)
            if result.outcome == DeliveryOutcome.PERMANENT or retry.attempt_count >= self.config.retry_budget:
                # 3. Poison isolation: park the record and move past it
                await self._dead_letter(lane, record, retry)
                cursor = await self._advance(lane, cursor, record)
                lane.retry = None
                if cursor is None:
                    break
                await self._mark_if_settled(record)
                lane.dead_lettered += 1
                settled += 1
                continue

            await self._save_retry(lane, retry)
            log.info(
                f"Record {record.id} to {lane.consumer_id} failed (attempt {retry.attempt_count}/"
                f"{self.config.retry_budget}): {retry.last_error}. Next try at {retry.next_eligible_at.isoformat()}."
            )
            break
        return settled

    async def _ensure_lease(self) -> None:
        current = await self.stores.ownership.is_current(
            self.partition_id, self.instance_id, self.fencing_token, self._clock()
        )
        if not current:
            raise LeaseLostError(self.partition_id, self.instance_id, self.fencing_token)

    async def _attempt(self, lane: ConsumerLane, record: OutboxEntry) -> DeliveryResult:
        try:
            return await lane.client.deliver(record)
        except Exception as e:
            log.warning(f"Delivery client for {lane.consumer_id} raised on record {record.id}: {e!r}")
            return DeliveryResult.retryable(f"{type(e).__name__}: {e}")

    def _record_failure(self, lane: ConsumerLane, record: OutboxEntry, result: DeliveryResult) -> RetryState:
        if lane.retry is None or lane.retry.record_id != record.id:
            lane.retry = RetryState(record_id=record.id)
        retry = lane.retry
        retry.attempt_count += 1
        retry.last_error = result.reason
        retry.next_eligible_at = self._clock() + timedelta(seconds=self.config.backoff.delay_for(retry.attempt_count))
        return retry

    async def _restore_retry(self, lane: ConsumerLane) -> None:
        """Picks up the retry bookkeeping a previous owner left on the cursor."""
        lane.retry = await self.stores.cursors.get_retry(self.partition_id, lane.consumer_id)
        lane.restored = True
        if lane.retry is not None:
            log.info(
                f"Resuming retries of record {lane.retry.record_id} for {lane.consumer_id} on partition "
                f"{self.partition_id} after {lane.retry.attempt_count} attempt(s)."
            )

    async def _save_retry(self, lane: ConsumerLane, retry: RetryState) -> None:
        try:
            await self.stores.cursors.save_retry(
                self.partition_id, lane.consumer_id, retry, fencing_token=self.fencing_token
            )
        except StaleFencingTokenError:
            raise LeaseLostError(self.partition_id, self.instance_id, self.fencing_token)

    async def _mark_if_settled(self, record: OutboxEntry) -> None:
        # dispatched_at gates retention, so every consumer must be past the record first
        positions = await self.stores.cursors.list_positions(partition_id=self.partition_id)
        reached = {p.consumer_id: p.last_dispatched_id for p in positions}
        if all(reached.get(lane.consumer_id, 0) >= record.id for lane in self.lanes):
            await self.stores.outbox.mark_dispatched(record.id, self._clock())

    async def _dead_letter(self, lane: ConsumerLane, record: OutboxEntry, retry: RetryState) -> None:
        now = self._clock()
        await self.stores.dead_letters.put(
            DeadLetter(
                record_id=record.id,
                partition_id=record.partition_id,
                partition_key=record.partition_key,
                consumer_id=lane.consumer_id,
                event_type=record.event_type,
                payload=record.payload,
                failure_reason=retry.last_error or "unknown",
                attempt_count=retry.attempt_count,
                last_attempt_at=now,
            )
        )
        log.warning(
            f"Dead-lettered record {record.id} (partition {self.partition_id}, consumer {lane.consumer_id}) "
            f"after {retry.attempt_count} attempt(s): {retry.last_error}"
        )

    async def _advance(self, lane: ConsumerLane, cursor: CursorPosition, record: OutboxEntry) -> Optional[CursorPosition]:
        """Moves the lane's cursor past `record`. None means the batch must be abandoned."""
        try:
            return await self.stores.cursors.advance(
                self.partition_id,
                lane.consumer_id,
                record.id,
                fencing_token=self.fencing_token,
                epoch=cursor.epoch,
            )
        except CursorEpochMismatchError:
            log.info(
                f"Cursor of {lane.consumer_id} on partition {self.partition_id} was reset by a replay; re-reading."
            )
            lane.retry = None
            return None
        except StaleFencingTokenError:
            raise LeaseLostError(self.partition_id, self.instance_id, self.fencing_token)
        except CursorRegressionError as e:
            log.error(f"Rejected cursor write on partition {self.partition_id}: {e}")
            return None

    def _idle_wait(self) -> float:
        # Wake for the earliest retry or backpressure deadline if it comes before the poll interval
        now = self._clock()
        wait = self.config.polling_interval
        for lane in self.lanes:
            deadlines = [lane.paused_until, lane.retry.next_eligible_at if lane.retry else None]
            for deadline in deadlines:
                if deadline is not None and deadline > now:
                    wait = min(wait, (deadline - now).total_seconds())
        return max(wait, 0.0)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
