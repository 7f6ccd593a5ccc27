import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx

from outbox_dispatcher.core.config import DELIVERY_TIMEOUT
from outbox_dispatcher.core.errors import PermanentDeliveryError
from outbox_dispatcher.stores.base import OutboxEntry

log = logging.getLogger("outbox_dispatcher.delivery")


class DeliveryOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"  # Timeout, transient transport error
    PERMANENT = "PERMANENT"  # Malformed payload, rejected by consumer contract
    SATURATED = "SATURATED"  # Downstream asks us to slow down


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    reason: Optional[str] = None
    retry_after: Optional[float] = None

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(DeliveryOutcome.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "DeliveryResult":
        return cls(DeliveryOutcome.RETRYABLE, reason)

    @classmethod
    def permanent(cls, reason: str) -> "DeliveryResult":
        return cls(DeliveryOutcome.PERMANENT, reason)

    @classmethod
    def saturated(cls, reason: str = "Downstream saturated", retry_after: Optional[float] = None) -> "DeliveryResult":
        return cls(DeliveryOutcome.SATURATED, reason, retry_after)


@runtime_checkable
class DeliveryClient(Protocol):
    """
    Hands one record to the downstream transport. May be invoked more than
    once for the same record; consumers deduplicate on the record id.
    """

    async def deliver(self, record: OutboxEntry) -> DeliveryResult:
        ...


SATURATION_STATUSES = {429, 503}
RETRYABLE_STATUSES = {408, 425}


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not supported, fall back to the worker's own wait
        return None


class HttpDeliveryClient:
    """Delivers records as HTTP POSTs of the raw payload to one consumer endpoint."""

    def __init__(self, endpoint: str, timeout: float = DELIVERY_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def headers_for(record: OutboxEntry) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/octet-stream",
            "Idempotency-Key": f"outbox-{record.id}",
            "X-Outbox-Record-Id": str(record.id),
            "X-Partition-Key": record.partition_key,
            "X-Partition-Id": str(record.partition_id),
        }
        if record.event_type:
            headers["X-Event-Type"] = record.event_type
        return headers

    async def deliver(self, record: OutboxEntry) -> DeliveryResult:
        try:
            response = await self._client.post(self.endpoint, content=record.payload, headers=self.headers_for(record))
        except httpx.TimeoutException as e:
            return DeliveryResult.retryable(f"Timeout delivering record {record.id}: {e}")
        except httpx.TransportError as e:
            return DeliveryResult.retryable(f"Transport error delivering record {record.id}: {e}")

        status = response.status_code
        if 200 <= status < 300:
            return DeliveryResult.success()
        if status in SATURATION_STATUSES:
            return DeliveryResult.saturated(f"Consumer answered HTTP {status}", _retry_after_seconds(response))
        if status in RETRYABLE_STATUSES or status >= 500:
            return DeliveryResult.retryable(f"Consumer answered HTTP {status}")
        return DeliveryResult.permanent(f"Consumer rejected record {record.id} with HTTP {status}: {response.text[:200]}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


Handler = Callable[[OutboxEntry], Awaitable[None]]


class HandlerDeliveryClient:
    """
    Routes an OutboxEntry to the correct in-process handler by event type.
    This stands in for a message broker when producer and consumer share a process.
    """

    def __init__(self, handlers: Dict[str, Handler], default: Optional[Handler] = None):
        self.handlers = dict(handlers)
        self.default = default

    async def deliver(self, record: OutboxEntry) -> DeliveryResult:
        handler = self.handlers.get(record.event_type or "", self.default)
        if handler is None:
            return DeliveryResult.permanent(f"No handler found for event type: {record.event_type}")

        try:
            await handler(record)
        except PermanentDeliveryError as e:
            return DeliveryResult.permanent(str(e))
        except Exception as e:
            log.warning(f"Handler for {record.event_type} failed on record {record.id}: {e}")
            return DeliveryResult.retryable(f"{type(e).__name__}: {e}")
        return DeliveryResult.success()
