from datetime import timedelta

import pytest
import pytest_asyncio
from tortoise.exceptions import DoesNotExist

from outbox_dispatcher.core.db import close_db, init_db
from outbox_dispatcher.core.errors import CursorEpochMismatchError, CursorRegressionError, StaleFencingTokenError
from outbox_dispatcher.events.outbox_utility import create_outbox_record
from outbox_dispatcher.models import InstanceHeartbeat, ProcessedEvent
from outbox_dispatcher.services.partitioning import partition_for
from outbox_dispatcher.stores import DeadLetter, DeadLetterFilter, RetryState, tortoise_stores
from outbox_dispatcher.stores.orm import store_errors


@pytest_asyncio.fixture
async def db_stores():
    await init_db("sqlite://:memory:")
    bundle = await tortoise_stores(4)
    yield bundle
    await close_db()


class TestOutboxLog:
    @pytest.mark.asyncio
    async def test_append_assigns_increasing_ids_per_partition(self, db_stores):
        outbox = db_stores.outbox
        ids = [await outbox.append("account-1", {"n": n}, event_type="account.updated.v1") for n in range(3)]
        assert ids == sorted(ids)

        record = await create_outbox_record("account-1", "raw text", partition_count=4)
        partition_id = record.partition_id

        entries = await outbox.read_from(partition_id, 0, 10)
        assert [e.id for e in entries] == ids + [record.id]
        assert entries[0].payload == b'{"n":0}'
        assert entries[-1].payload == b"raw text"
        assert await outbox.head_id(partition_id) == record.id
        assert await outbox.first_id(partition_id) == ids[0]
        assert [e.id for e in await outbox.read_from(partition_id, ids[1], 1)] == [ids[2]]

    @pytest.mark.asyncio
    async def test_empty_partition(self, db_stores):
        assert await db_stores.outbox.head_id(0) == 0
        assert await db_stores.outbox.read_from(0, 0, 10) == []

    @pytest.mark.asyncio
    async def test_mark_dispatched_sets_timestamp_once(self, db_stores, clock):
        record_id = await db_stores.outbox.append("account-2", {"n": 1})
        first = clock()
        await db_stores.outbox.mark_dispatched(record_id, first)
        await db_stores.outbox.mark_dispatched(record_id, first + timedelta(seconds=30))

        [entry] = await db_stores.outbox.read_from(partition_for("account-2", 4), 0, 10)
        assert entry.dispatched_at == first


class TestOwnership:
    @pytest.mark.asyncio
    async def test_lease_lifecycle(self, db_stores, clock):
        ownership = db_stores.ownership
        lease = await ownership.acquire(1, "instance-a", clock(), 15)
        assert lease.fencing_token == 1
        assert await ownership.acquire(1, "instance-b", clock(), 15) is None
        assert await ownership.is_current(1, "instance-a", 1, clock())

        clock.advance(10)
        renewed = await ownership.renew(1, "instance-a", 1, clock(), 15)
        assert renewed.expires_at == clock() + timedelta(seconds=15)

        assert await ownership.release(1, "instance-a", 1, clock())
        taken = await ownership.acquire(1, "instance-b", clock(), 15)
        assert taken.fencing_token == 2

        revoked = await ownership.revoke(1, clock())
        assert revoked.fencing_token == 3
        assert not await ownership.is_current(1, "instance-b", 2, clock())

    @pytest.mark.asyncio
    async def test_expired_lease(self, db_stores, clock):
        ownership = db_stores.ownership
        await ownership.acquire(2, "instance-a", clock(), 15)
        clock.advance(16)

        assert await ownership.renew(2, "instance-a", 1, clock(), 15) is None
        assert not await ownership.is_current(2, "instance-a", 1, clock())
        assert (await ownership.acquire(2, "instance-b", clock(), 15)).fencing_token == 2


class TestRegistry:
    @pytest.mark.asyncio
    async def test_heartbeat_keeps_start_time(self, db_stores, clock):
        registry = db_stores.registry
        started = clock()
        await registry.heartbeat("instance-a", started)
        clock.advance(5)
        record = await registry.heartbeat("instance-a", clock())

        assert record.started_at == started
        assert record.last_heartbeat_at == clock()
        await registry.deregister("instance-a")
        assert await registry.list_instances() == []


class TestCursors:
    @pytest.mark.asyncio
    async def test_compare_and_swap_rules(self, db_stores):
        cursors = db_stores.cursors
        await cursors.advance(0, "proj", 10, fencing_token=2)

        with pytest.raises(CursorRegressionError):
            await cursors.advance(0, "proj", 5, fencing_token=2)
        with pytest.raises(StaleFencingTokenError):
            await cursors.advance(0, "proj", 11, fencing_token=1)

        reset = await cursors.advance(0, "proj", 0, replay=True)
        assert (reset.last_dispatched_id, reset.epoch) == (0, 1)
        with pytest.raises(CursorEpochMismatchError):
            await cursors.advance(0, "proj", 1, fencing_token=2, epoch=0)

        position = await cursors.advance(0, "proj", 1, fencing_token=3, epoch=1)
        assert position == await cursors.get(0, "proj")
        assert [p.consumer_id for p in await cursors.list_positions(partition_id=0)] == ["proj"]

    @pytest.mark.asyncio
    async def test_retry_bookkeeping_round_trip(self, db_stores, clock):
        cursors = db_stores.cursors
        eligible = clock() + timedelta(seconds=2)
        # No cursor row yet: the first failure creates it
        await cursors.save_retry(1, "proj", RetryState(7, 1, eligible, "timeout"), fencing_token=1)
        await cursors.save_retry(1, "proj", RetryState(7, 2, eligible, "HTTP 502"), fencing_token=1)

        restored = await cursors.get_retry(1, "proj")
        assert (restored.record_id, restored.attempt_count, restored.last_error) == (7, 2, "HTTP 502")
        assert restored.next_eligible_at == eligible
        assert (await cursors.get(1, "proj")).last_dispatched_id == 0

        # A newer owner moves the cursor; the old owner can no longer write retry state
        await cursors.advance(1, "proj", 7, fencing_token=2)
        assert await cursors.get_retry(1, "proj") is None
        with pytest.raises(StaleFencingTokenError):
            await cursors.save_retry(1, "proj", RetryState(8, 1), fencing_token=1)


class TestDeadLetters:
    @pytest.mark.asyncio
    async def test_put_drain_purge(self, db_stores, clock):
        sink = db_stores.dead_letters
        stored = await sink.put(
            DeadLetter(
                record_id=42,
                partition_id=3,
                partition_key="account-3",
                consumer_id="proj",
                payload=b"\x00poison",
                failure_reason="schema violation",
                attempt_count=1,
                last_attempt_at=clock(),
            )
        )
        assert stored.id is not None
        assert await sink.count(partition_id=3) == 1

        drained = await sink.drain(DeadLetterFilter(consumer_id="proj"), clock())
        assert [d.payload for d in drained] == [b"\x00poison"]
        assert await sink.count() == 0
        assert await sink.drain(DeadLetterFilter(), clock()) == []
        assert len(await sink.find(DeadLetterFilter(include_drained=True))) == 1

        assert await sink.purge_drained(clock() - timedelta(days=1)) == 0
        assert await sink.purge_drained(clock() + timedelta(seconds=1)) == 1


@pytest.mark.asyncio
async def test_processed_events_are_unique_per_consumer(db_stores):
    await ProcessedEvent.create(consumer_id="proj", event_id="7")
    await ProcessedEvent.create(consumer_id="search", event_id="7")
    assert await ProcessedEvent.filter(event_id="7").count() == 2


@pytest.mark.asyncio
async def test_lookup_miss_is_not_reported_as_an_outage(db_stores):
    with pytest.raises(DoesNotExist):
        async with store_errors("registry.heartbeat"):
            await InstanceHeartbeat.get(instance_id="deregistered")
