import logging

import pytest

from outbox_dispatcher.core.errors import InvalidReplayTargetError, UnknownPartitionError, UnscopedReplayError
from outbox_dispatcher.services.dispatcher import PartitionWorker
from outbox_dispatcher.services.replay import ReplayController
from outbox_dispatcher.testing.testing_mocks import RecordingDeliveryClient


async def start_worker(stores, clock, config, partition_id, consumers):
    lease = await stores.ownership.acquire(partition_id, "instance-a", clock(), config.lease_duration)
    return PartitionWorker(partition_id, lease, consumers, stores, config, clock=clock)


@pytest.mark.asyncio
async def test_replay_partition_redelivers_in_original_order(stores, clock, config, key_in):
    ids = [await stores.outbox.append(key_in(2), {"n": n}) for n in range(4)]
    await stores.outbox.append(key_in(3), "not replayed")
    client = RecordingDeliveryClient()
    worker = await start_worker(stores, clock, config, 2, {"proj-X": client})
    await worker.poll_once()
    assert client.delivered == ids

    result = await ReplayController(stores).reset("proj-X", partition_id=2, to_id=0)
    assert [(p.partition_id, p.last_dispatched_id, p.epoch) for p in result.reset] == [(2, 0, 1)]

    await worker.poll_once()
    assert client.delivered == ids + ids


@pytest.mark.asyncio
async def test_replay_to_id_redelivers_from_that_record(stores, clock, config, key_in):
    ids = [await stores.outbox.append(key_in(1), {"n": n}) for n in range(4)]
    client = RecordingDeliveryClient()
    worker = await start_worker(stores, clock, config, 1, {"proj-X": client})
    await worker.poll_once()

    await ReplayController(stores).reset("proj-X", partition_id=1, to_id=ids[2])
    assert (await stores.cursors.get(1, "proj-X")).last_dispatched_id == ids[1]

    await worker.poll_once()
    assert client.delivered == ids + ids[2:]


@pytest.mark.asyncio
async def test_replay_wins_over_in_flight_batch(stores, clock, config, key_in):
    ids = [await stores.outbox.append(key_in(0), {"n": n}) for n in range(3)]
    controller = ReplayController(stores)

    class ReplayingClient(RecordingDeliveryClient):
        replayed = False

        async def deliver(self, record):
            if not self.replayed:
                self.replayed = True
                await controller.reset("proj-X", partition_id=0, to_beginning=True)
            return await super().deliver(record)

    client = ReplayingClient()
    worker = await start_worker(stores, clock, config, 0, {"proj-X": client})

    # The advance after the first delivery sees the new epoch and drops the batch
    assert await worker.poll_once() == 0
    assert (await stores.cursors.get(0, "proj-X")).last_dispatched_id == 0

    assert await worker.poll_once() == 3
    assert client.delivered == [ids[0]] + ids


@pytest.mark.asyncio
async def test_replay_before_retained_records_warns(stores, clock, config, key_in, caplog):
    ids = [await stores.outbox.append(key_in(2), {"n": n}) for n in range(4)]
    client = RecordingDeliveryClient()
    worker = await start_worker(stores, clock, config, 2, {"proj-X": client})
    await worker.poll_once()
    stores.outbox.truncate_before(2, ids[2])

    with caplog.at_level(logging.WARNING, logger="outbox_dispatcher.replay"):
        await ReplayController(stores).reset("proj-X", partition_id=2, to_id=ids[1])
    assert "oldest retained" in caplog.text

    await worker.poll_once()
    assert client.delivered == ids + ids[2:]


@pytest.mark.asyncio
async def test_all_partitions_skips_cursors_behind_target(stores):
    await stores.cursors.advance(1, "proj-X", 20)
    result = await ReplayController(stores).reset("proj-X", all_partitions=True, to_id=6)

    assert [(p.partition_id, p.last_dispatched_id) for p in result.reset] == [(1, 5)]
    assert result.skipped == [0, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_all_partitions_to_beginning(stores):
    for partition_id in range(3):
        await stores.cursors.advance(partition_id, "proj-X", 10 + partition_id)
    await stores.cursors.advance(0, "search", 10)

    result = await ReplayController(stores).reset("proj-X", all_partitions=True, to_beginning=True)
    assert len(result.reset) == 6
    assert all(p.last_dispatched_id == 0 for p in await stores.cursors.list_positions(consumer_id="proj-X"))
    # Other consumers are untouched
    assert (await stores.cursors.get(0, "search")).last_dispatched_id == 10


class TestReplayValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"consumer_id": "", "partition_id": 2, "to_beginning": True},
            {"consumer_id": "proj-X", "to_beginning": True},
            {"consumer_id": "proj-X", "partition_id": 2, "all_partitions": True, "to_beginning": True},
        ],
    )
    async def test_unscoped(self, stores, kwargs):
        with pytest.raises(UnscopedReplayError):
            await ReplayController(stores).reset(**kwargs)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"partition_id": 2},
            {"partition_id": 2, "to_id": 3, "to_beginning": True},
            {"partition_id": 2, "to_id": -1},
        ],
    )
    async def test_invalid_target(self, stores, kwargs):
        with pytest.raises(InvalidReplayTargetError):
            await ReplayController(stores).reset("proj-X", **kwargs)

    @pytest.mark.asyncio
    async def test_forward_target_rejected(self, stores):
        await stores.cursors.advance(2, "proj-X", 4)
        with pytest.raises(InvalidReplayTargetError):
            await ReplayController(stores).reset("proj-X", partition_id=2, to_id=10)
        assert (await stores.cursors.get(2, "proj-X")).last_dispatched_id == 4

    @pytest.mark.asyncio
    async def test_unknown_partition(self, stores):
        with pytest.raises(UnknownPartitionError):
            await ReplayController(stores).reset("proj-X", partition_id=6, to_beginning=True)

    @pytest.mark.asyncio
    async def test_errors_are_value_errors(self, stores):
        with pytest.raises(ValueError):
            await ReplayController(stores).reset("", all_partitions=True, to_beginning=True)
