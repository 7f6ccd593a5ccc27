import hashlib
from typing import Callable, Dict, Iterable, List


def _stable_hash(value: str) -> int:
    # hash() is salted per process; a digest keeps the mapping stable across restarts
    digest = hashlib.sha1(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def partition_for(partition_key: str, partition_count: int) -> int:
    """Maps a partition key to its logical partition, 0..partition_count-1."""
    if not partition_key:
        raise ValueError("partition_key must not be empty.")
    if partition_count < 1:
        raise ValueError("partition_count must be at least 1.")
    return _stable_hash(partition_key) % partition_count


def round_robin_assignment(instance_ids: Iterable[str], partition_count: int) -> Dict[int, str]:
    """
    Partition p goes to the p-th live instance (mod the number of instances).
    Instances are sorted first, so every instance computes the same answer.
    """
    live = sorted(set(instance_ids))
    if not live:
        return {}
    return {partition: live[partition % len(live)] for partition in range(partition_count)}


def rendezvous_assignment(instance_ids: Iterable[str], partition_count: int) -> Dict[int, str]:
    """
    Highest-random-weight hashing: each partition picks the instance with the
    largest hash of (instance, partition). A join or leave only moves the
    partitions gained or lost by that instance.
    """
    live = sorted(set(instance_ids))
    if not live:
        return {}
    return {
        partition: max(live, key=lambda instance_id: (_stable_hash(f"{instance_id}:{partition}"), instance_id))
        for partition in range(partition_count)
    }


ASSIGNMENT_STRATEGIES: Dict[str, Callable[[Iterable[str], int], Dict[int, str]]] = {
    "round_robin": round_robin_assignment,
    "rendezvous": rendezvous_assignment,
}


def get_assignment_strategy(name: str) -> Callable[[Iterable[str], int], Dict[int, str]]:
    try:
        return ASSIGNMENT_STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown assignment strategy '{name}'. Expected one of: {', '.join(sorted(ASSIGNMENT_STRATEGIES))}"
        )


def partitions_of(assignment: Dict[int, str], instance_id: str) -> List[int]:
    return sorted(partition for partition, owner in assignment.items() if owner == instance_id)
