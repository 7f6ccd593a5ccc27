import pytest

from outbox_dispatcher.services.partition_assigner import Liveness, PartitionAssigner


@pytest.fixture
def assigner(stores, config, clock):
    return PartitionAssigner(stores.ownership, stores.registry, config, clock=clock)


async def converge(assigner, held, rounds=3):
    for _ in range(rounds):
        for instance_id in held:
            held[instance_id] = await assigner.tick(instance_id, held[instance_id])
    return held


class TestLeases:
    @pytest.mark.asyncio
    async def test_acquire_blocked_while_lease_valid(self, stores, clock):
        lease = await stores.ownership.acquire(0, "instance-a", clock(), 15)
        assert lease.fencing_token == 1
        assert await stores.ownership.acquire(0, "instance-b", clock(), 15) is None

    @pytest.mark.asyncio
    async def test_expired_lease_cannot_be_renewed(self, stores, clock):
        lease = await stores.ownership.acquire(0, "instance-a", clock(), 15)
        clock.advance(16)
        assert await stores.ownership.renew(0, "instance-a", lease.fencing_token, clock(), 15) is None

        fresh = await stores.ownership.acquire(0, "instance-a", clock(), 15)
        assert fresh.fencing_token == lease.fencing_token + 1

    @pytest.mark.asyncio
    async def test_release_keeps_token_and_revoke_bumps_it(self, stores, clock):
        lease = await stores.ownership.acquire(0, "instance-a", clock(), 15)
        assert await stores.ownership.release(0, "instance-a", lease.fencing_token, clock())
        assert (await stores.ownership.get(0)).fencing_token == lease.fencing_token

        second = await stores.ownership.acquire(0, "instance-b", clock(), 15)
        assert second.fencing_token == lease.fencing_token + 1

        revoked = await stores.ownership.revoke(0, clock())
        assert revoked.instance_id is None
        assert revoked.fencing_token == second.fencing_token + 1
        assert not await stores.ownership.is_current(0, "instance-b", second.fencing_token, clock())


class TestAssignment:
    @pytest.mark.asyncio
    async def test_single_instance_owns_everything(self, assigner):
        held = await assigner.tick("instance-a", {})
        assert sorted(held) == list(range(6))
        assert all(lease.fencing_token == 1 for lease in held.values())

    @pytest.mark.asyncio
    async def test_three_instances_converge_with_single_ownership(self, assigner, stores, clock):
        held = await converge(assigner, {"instance-a": {}, "instance-b": {}, "instance-c": {}})

        assert sorted(held["instance-a"]) == [0, 3]
        assert sorted(held["instance-b"]) == [1, 4]
        assert sorted(held["instance-c"]) == [2, 5]

        leases = await stores.ownership.list_leases()
        assert len(leases) == 6
        for lease in leases:
            assert lease.is_valid(clock())
            assert lease.partition_id in held[lease.instance_id]

    @pytest.mark.asyncio
    async def test_departed_instance_partitions_move_after_expiry(self, assigner, clock):
        held = await converge(assigner, {"instance-a": {}, "instance-b": {}})
        assert sorted(held["instance-b"]) == [1, 3, 5]

        # b stops heartbeating; its leases are honoured until they expire
        del held["instance-b"]
        clock.advance(5)
        held = await converge(assigner, held, rounds=1)
        assert sorted(held["instance-a"]) == [0, 2, 4]

        for _ in range(2):
            clock.advance(5)
            held = await converge(assigner, held, rounds=1)
        assert sorted(held["instance-a"]) == list(range(6))

    @pytest.mark.asyncio
    async def test_force_rebalance_revokes_non_desired_holders(self, assigner, stores, clock):
        a_held = await assigner.tick("instance-a", {})
        b_held = await assigner.tick("instance-b", {})
        assert b_held == {}

        desired = await assigner.force_rebalance()
        assert desired == {0: "instance-a", 1: "instance-b", 2: "instance-a", 3: "instance-b", 4: "instance-a", 5: "instance-b"}
        for partition_id in (1, 3, 5):
            lease = a_held[partition_id]
            assert not await stores.ownership.is_current(partition_id, "instance-a", lease.fencing_token, clock())

        b_held = await assigner.tick("instance-b", b_held)
        assert sorted(b_held) == [1, 3, 5]
        assert all(lease.fencing_token == 3 for lease in b_held.values())

    @pytest.mark.asyncio
    async def test_release_all_on_shutdown(self, assigner, stores):
        held = await assigner.tick("instance-a", {})
        await assigner.release_all("instance-a", held)

        assert all(lease.instance_id is None for lease in await stores.ownership.list_leases())
        assert await stores.registry.list_instances() == []


@pytest.mark.asyncio
async def test_liveness_from_heartbeats(assigner, stores, clock):
    await stores.registry.heartbeat("instance-a", clock())
    clock.advance(10)
    await stores.registry.heartbeat("instance-b", clock())
    clock.advance(6)

    assert await assigner.liveness() == {"instance-a": Liveness.EXPIRED, "instance-b": Liveness.ACTIVE}
    assert await assigner.live_instances() == ["instance-b"]
