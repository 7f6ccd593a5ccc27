import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Dict

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/outbox_db")

# Application Metadata
PROJECT_NAME = "Partitioned Outbox Dispatcher"
VERSION = "1.0.0"

# Partitioning and Ownership
PARTITION_COUNT = int(os.getenv("PARTITION_COUNT", 16)) # Fixed after deployment, changing it needs a migration
LEASE_DURATION = float(os.getenv("LEASE_DURATION", 15)) # Seconds a partition lease stays valid without renewal
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", 5)) # Seconds between heartbeat/rebalance ticks
ASSIGNMENT_STRATEGY = os.getenv("ASSIGNMENT_STRATEGY", "round_robin") # 'round_robin' or 'rendezvous'
INSTANCE_ID = os.getenv("INSTANCE_ID", "")

# Dispatcher Worker Configuration
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1)) # Idle wait when a partition has nothing to deliver
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 50)) # How many records to fetch per poll
RETRY_BUDGET = int(os.getenv("RETRY_BUDGET", 5)) # Delivery attempts before a record is dead-lettered
BACKOFF_INITIAL_DELAY = float(os.getenv("BACKOFF_INITIAL_DELAY", 0.5))
BACKOFF_MULTIPLIER = float(os.getenv("BACKOFF_MULTIPLIER", 2.0))
BACKOFF_MAX_DELAY = float(os.getenv("BACKOFF_MAX_DELAY", 30))
MAX_BACKPRESSURE_WAIT = float(os.getenv("MAX_BACKPRESSURE_WAIT", 10))
DEAD_LETTER_RETENTION_DAYS = int(os.getenv("DEAD_LETTER_RETENTION_DAYS", 30))

# Delivery transport
CONSUMER_ENDPOINTS = os.getenv("CONSUMER_ENDPOINTS", "") # e.g. "projections=http://proj:8000/events,search=http://search/ingest"
DELIVERY_TIMEOUT = float(os.getenv("DELIVERY_TIMEOUT", 10))


def default_instance_id() -> str:
    """Builds an instance id from the host name when INSTANCE_ID is not set."""
    if INSTANCE_ID:
        return INSTANCE_ID
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def parse_consumer_endpoints(raw: str) -> Dict[str, str]:
    """Parses 'consumer=url,consumer2=url2' into a mapping."""
    endpoints = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        consumer_id, sep, url = chunk.partition("=")
        if not sep or not consumer_id.strip() or not url.strip():
            raise ValueError(f"Invalid consumer endpoint entry: '{chunk}'. Expected 'consumer_id=url'.")
        endpoints[consumer_id.strip()] = url.strip()
    return endpoints


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float = BACKOFF_INITIAL_DELAY
    multiplier: float = BACKOFF_MULTIPLIER
    max_delay: float = BACKOFF_MAX_DELAY

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based), capped at max_delay."""
        delay = self.initial_delay * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class DispatcherConfig:
    """All tunables of one dispatcher instance, defaulting to the environment values above."""
    partition_count: int = PARTITION_COUNT
    lease_duration: float = LEASE_DURATION
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    retry_budget: int = RETRY_BUDGET
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    batch_size: int = BATCH_SIZE
    polling_interval: float = POLLING_INTERVAL
    max_backpressure_wait: float = MAX_BACKPRESSURE_WAIT
    dead_letter_retention_days: int = DEAD_LETTER_RETENTION_DAYS
    assignment_strategy: str = ASSIGNMENT_STRATEGY

    def validate(self) -> "DispatcherConfig":
        if self.partition_count < 1:
            raise ValueError("partition_count must be at least 1.")
        if self.lease_duration <= 0 or self.heartbeat_interval <= 0:
            raise ValueError("lease_duration and heartbeat_interval must be positive.")
        # A lease must survive at least one missed heartbeat
        if self.heartbeat_interval >= self.lease_duration:
            raise ValueError(
                f"heartbeat_interval ({self.heartbeat_interval}s) must be shorter than "
                f"lease_duration ({self.lease_duration}s)."
            )
        if self.retry_budget < 1:
            raise ValueError("retry_budget must be at least 1.")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1.")
        if self.backoff.initial_delay < 0 or self.backoff.multiplier < 1 or self.backoff.max_delay < 0:
            raise ValueError("Invalid backoff policy.")
        if self.dead_letter_retention_days < 0:
            raise ValueError("dead_letter_retention_days cannot be negative.")
        return self
