# outbox_dispatcher/stores/__init__.py
from .base import (
    CursorPosition,
    CursorStore,
    DeadLetter,
    DeadLetterFilter,
    DeadLetterSink,
    InstanceRecord,
    InstanceRegistry,
    Lease,
    OutboxEntry,
    OutboxLog,
    OwnershipTable,
    RetryState,
    StoreBundle,
)
from .memory import memory_stores
from .orm import tortoise_stores

__all__ = [
    "CursorPosition",
    "CursorStore",
    "DeadLetter",
    "DeadLetterFilter",
    "DeadLetterSink",
    "InstanceRecord",
    "InstanceRegistry",
    "Lease",
    "OutboxEntry",
    "OutboxLog",
    "OwnershipTable",
    "RetryState",
    "StoreBundle",
    "memory_stores",
    "tortoise_stores",
]
