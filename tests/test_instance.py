import asyncio

import pytest

from outbox_dispatcher.services.instance import DispatcherInstance
from outbox_dispatcher.testing.testing_mocks import RecordingDeliveryClient


def make_instance(name, stores, config, clock, client=None):
    return DispatcherInstance(name, {"proj": client or RecordingDeliveryClient()}, stores, config, clock=clock)


async def wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.mark.asyncio
async def test_three_instances_split_partitions_and_release_on_shutdown(stores, clock, config):
    instances = [make_instance(f"instance-{n}", stores, config, clock) for n in "abc"]
    for _ in range(3):
        for instance in instances:
            await instance.tick()

    assert [instance.owned_partitions for instance in instances] == [[0, 3], [1, 4], [2, 5]]
    assert all(sorted(instance.workers) == instance.owned_partitions for instance in instances)

    for instance in instances:
        await instance.shutdown()

    assert all(lease.instance_id is None for lease in await stores.ownership.list_leases())
    assert await stores.registry.list_instances() == []
    assert all(not instance.workers for instance in instances)


@pytest.mark.asyncio
async def test_instance_delivers_every_owned_partition(stores, clock, config, key_in):
    ids = [await stores.outbox.append(key_in(partition_id), {"p": partition_id}) for partition_id in range(6)]
    client = RecordingDeliveryClient()
    instance = make_instance("instance-a", stores, config, clock, client)

    await instance.tick()
    assert await wait_until(lambda: len(client.delivered) == len(ids))
    await instance.shutdown()

    assert sorted(client.delivered) == sorted(ids)


@pytest.mark.asyncio
async def test_worker_restarted_with_fresh_token_after_revoke(stores, clock, config):
    instance = make_instance("instance-a", stores, config, clock)
    await instance.tick()
    old_worker = instance.workers[0]

    await stores.ownership.revoke(0, clock())
    await instance.tick()

    new_worker = instance.workers[0]
    assert new_worker is not old_worker
    assert new_worker.fencing_token == old_worker.fencing_token + 2
    assert old_worker.stopping
    await instance.shutdown()


@pytest.mark.asyncio
async def test_run_until_stop_requested(stores, clock, config):
    instance = make_instance("instance-a", stores, config, clock)
    task = asyncio.create_task(instance.run())
    assert await wait_until(lambda: len(instance.owned_partitions) == 6)

    instance.request_stop()
    await asyncio.wait_for(task, timeout=2)

    assert instance.owned_partitions == []
    assert all(lease.instance_id is None for lease in await stores.ownership.list_leases())
