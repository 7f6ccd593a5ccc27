import logging
from dataclasses import dataclass, field
from typing import List, Optional

from outbox_dispatcher.core.errors import InvalidReplayTargetError, UnknownPartitionError, UnscopedReplayError
from outbox_dispatcher.stores.base import CursorPosition, StoreBundle

log = logging.getLogger("outbox_dispatcher.replay")


@dataclass
class ReplayResult:
    consumer_id: str
    reset: List[CursorPosition] = field(default_factory=list)
    # Partitions left alone because their cursor was already behind the target
    skipped: List[int] = field(default_factory=list)


class ReplayController:
    """
    Resets a consumer's cursor so the owning workers re-deliver from an
    earlier point. Always scoped to one consumer and one or all partitions.
    """

    def __init__(self, stores: StoreBundle):
        self.stores = stores

    @property
    def partition_count(self) -> int:
        return self.stores.outbox.partition_count

    def _validate(
        self,
        consumer_id: str,
        partition_id: Optional[int],
        all_partitions: bool,
        to_id: Optional[int],
        to_beginning: bool,
    ) -> List[int]:
        if not consumer_id or not consumer_id.strip():
            raise UnscopedReplayError("Replay must name a consumer_id; global replays are not allowed.")
        if (partition_id is None) == (not all_partitions):
            raise UnscopedReplayError("Replay needs exactly one of partition_id or all_partitions.")
        if (to_id is None) == (not to_beginning):
            raise InvalidReplayTargetError("Replay needs exactly one of to_id or to_beginning.")
        if to_id is not None and to_id < 0:
            raise InvalidReplayTargetError(f"Replay target must not be negative, got {to_id}.")

        if all_partitions:
            return list(range(self.partition_count))
        if not 0 <= partition_id < self.partition_count:
            raise UnknownPartitionError(
                f"Partition {partition_id} does not exist (valid range 0..{self.partition_count - 1})."
            )
        return [partition_id]

    async def reset(
        self,
        consumer_id: str,
        partition_id: Optional[int] = None,
        all_partitions: bool = False,
        to_id: Optional[int] = None,
        to_beginning: bool = False,
    ) -> ReplayResult:
        """
        Moves the cursor of `consumer_id` so that `to_id` (or the very first
        record) is the next record delivered. A target ahead of the current
        cursor would skip undelivered records: it is rejected for a single
        partition and skipped per partition for an all-partition replay.
        """
        partitions = self._validate(consumer_id, partition_id, all_partitions, to_id, to_beginning)
        target = 0 if to_beginning else max(to_id - 1, 0)

        result = ReplayResult(consumer_id=consumer_id)
        for pid in partitions:
            current = await self.stores.cursors.get(pid, consumer_id)
            if target > current.last_dispatched_id:
                if not all_partitions:
                    raise InvalidReplayTargetError(
                        f"Replay target {to_id} is ahead of the cursor of {consumer_id} on partition {pid} "
                        f"({current.last_dispatched_id}); it would skip undelivered records."
                    )
                result.skipped.append(pid)
                continue

            first_id = await self.stores.outbox.first_id(pid)
            if to_id and first_id and to_id < first_id:
                log.warning(
                    f"Replay of {consumer_id} on partition {pid} targets id {to_id}, but the oldest retained "
                    f"record is {first_id}; earlier records are gone."
                )

            position = await self.stores.cursors.advance(pid, consumer_id, target, replay=True)
            result.reset.append(position)
            log.info(
                f"Replay: cursor of {consumer_id} on partition {pid} reset from "
                f"{current.last_dispatched_id} to {target} (epoch {position.epoch})."
            )
        return result
