import pytest

from outbox_dispatcher.services.partitioning import (
    get_assignment_strategy,
    partition_for,
    partitions_of,
    rendezvous_assignment,
    round_robin_assignment,
)


class TestPartitionFor:
    def test_same_key_same_partition(self):
        """Mapping is a pure function of the key"""
        first = partition_for("account-42", 16)
        assert all(partition_for("account-42", 16) == first for _ in range(100))

    def test_known_values_are_process_independent(self):
        """SHA-1 based, so the value is fixed across interpreter runs (no hash salting)"""
        import hashlib
        expected = int.from_bytes(hashlib.sha1(b"account-42").digest()[:8], "big") % 16
        assert partition_for("account-42", 16) == expected

    def test_range(self):
        partitions = {partition_for(f"stream-{i}", 6) for i in range(500)}
        assert partitions == set(range(6))

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            partition_for("", 6)

    def test_invalid_partition_count(self):
        with pytest.raises(ValueError):
            partition_for("account-1", 0)


class TestAssignmentStrategies:
    def test_round_robin_covers_every_partition(self):
        assignment = round_robin_assignment(["c", "a", "b"], 6)
        assert assignment == {0: "a", 1: "b", 2: "c", 3: "a", 4: "b", 5: "c"}
        assert partitions_of(assignment, "b") == [1, 4]

    def test_round_robin_ignores_input_order(self):
        assert round_robin_assignment(["b", "a"], 4) == round_robin_assignment(["a", "b"], 4)

    def test_no_instances_no_assignment(self):
        assert round_robin_assignment([], 6) == {}
        assert rendezvous_assignment([], 6) == {}

    def test_rendezvous_only_moves_partitions_of_leaving_instance(self):
        before = rendezvous_assignment(["a", "b", "c"], 32)
        after = rendezvous_assignment(["a", "c"], 32)
        for partition, owner in before.items():
            if owner != "b":
                assert after[partition] == owner
        assert set(after.values()) <= {"a", "c"}

    def test_strategy_lookup(self):
        assert get_assignment_strategy("round_robin") is round_robin_assignment
        assert get_assignment_strategy("rendezvous") is rendezvous_assignment
        with pytest.raises(ValueError):
            get_assignment_strategy("ring")
