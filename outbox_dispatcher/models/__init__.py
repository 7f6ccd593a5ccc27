# outbox_dispatcher/models/__init__.py
from .cursor import DispatchCursor
from .dead_letter import DeadLetterEntry
from .outbox import OutboxRecord, PartitionHead
from .ownership import InstanceHeartbeat, OwnershipLease
from .processed_event import ProcessedEvent

# Export all models
__all__ = [
    "DeadLetterEntry",
    "DispatchCursor",
    "InstanceHeartbeat",
    "OutboxRecord",
    "OwnershipLease",
    "PartitionHead",
    "ProcessedEvent",
]
