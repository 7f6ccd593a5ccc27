from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
import base64

from outbox_dispatcher.services.partition_assigner import Liveness


class ConsumerLagResponse(BaseModel):
    consumer_id: str
    last_dispatched_id: int
    lag: int
    epoch: int


class PartitionStatusResponse(BaseModel):
    """Schema for one partition in the status report."""
    partition_id: int
    head_id: int
    owner: Optional[str] = None
    fencing_token: int
    lease_expires_at: Optional[datetime] = None
    dead_letters: int
    consumers: List[ConsumerLagResponse]


class RebalanceResponse(BaseModel):
    assignment: Dict[int, str]
    message: str


class ReplayRequest(BaseModel):
    """Schema for a replay request. Exactly one scope and one target must be set."""
    consumer_id: str
    partition_id: Optional[int] = None
    all_partitions: bool = False
    to_id: Optional[int] = Field(default=None, ge=0)
    to_beginning: bool = False


class CursorResponse(BaseModel):
    partition_id: int
    consumer_id: str
    last_dispatched_id: int
    epoch: int


class ReplayResponse(BaseModel):
    consumer_id: str
    reset: List[CursorResponse]
    skipped: List[int]
    message: str


class DeadLetterQuery(BaseModel):
    """Filter for listing and draining dead letters."""
    partition_id: Optional[int] = None
    consumer_id: Optional[str] = None
    partition_key: Optional[str] = None
    include_drained: bool = False
    limit: int = Field(default=100, ge=1, le=1000)


class DeadLetterResponse(BaseModel):
    id: Optional[int] = None
    record_id: int
    partition_id: int
    partition_key: str
    consumer_id: str
    event_type: Optional[str] = None
    payload: str  # base64, the payload is opaque bytes
    failure_reason: str
    attempt_count: int
    last_attempt_at: datetime
    created_at: Optional[datetime] = None
    drained_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry) -> "DeadLetterResponse":
        return cls(
            id=entry.id,
            record_id=entry.record_id,
            partition_id=entry.partition_id,
            partition_key=entry.partition_key,
            consumer_id=entry.consumer_id,
            event_type=entry.event_type,
            payload=base64.b64encode(entry.payload).decode("ascii"),
            failure_reason=entry.failure_reason,
            attempt_count=entry.attempt_count,
            last_attempt_at=entry.last_attempt_at,
            created_at=entry.created_at,
            drained_at=entry.drained_at,
        )


class PurgeRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=0)


class InstanceResponse(BaseModel):
    instance_id: str
    started_at: datetime
    last_heartbeat_at: datetime
    liveness: Liveness
    partitions: List[int]
