import itertools

import pytest

from outbox_dispatcher.core.config import BackoffPolicy, DispatcherConfig
from outbox_dispatcher.services.partitioning import partition_for
from outbox_dispatcher.stores import memory_stores
from outbox_dispatcher.testing.testing_mocks import ManualClock


def key_for_partition(partition_id: int, partition_count: int, prefix: str = "stream") -> str:
    """First '<prefix>-<n>' key that hashes into the given partition."""
    for n in itertools.count():
        key = f"{prefix}-{n}"
        if partition_for(key, partition_count) == partition_id:
            return key


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return DispatcherConfig(
        partition_count=6,
        lease_duration=15,
        heartbeat_interval=5,
        retry_budget=3,
        backoff=BackoffPolicy(initial_delay=1, multiplier=2, max_delay=8),
        batch_size=10,
        polling_interval=0.01,
        max_backpressure_wait=5,
        dead_letter_retention_days=30,
        assignment_strategy="round_robin",
    )


@pytest.fixture
def stores(clock, config):
    return memory_stores(config.partition_count, clock=clock)


@pytest.fixture
def key_in(config):
    """Factory for a partition key that lands in a chosen partition."""
    def _key(partition_id: int, prefix: str = "stream") -> str:
        return key_for_partition(partition_id, config.partition_count, prefix)
    return _key
