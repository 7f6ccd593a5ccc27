import asyncio
import logging
import signal
from typing import Any, Dict, Optional
from outbox_dispatcher.consumers.idempotent_consumer import deduplicated
from outbox_dispatcher.core.config import (
    CONSUMER_ENDPOINTS,
    DELIVERY_TIMEOUT,
    DispatcherConfig,
    default_instance_id,
    parse_consumer_endpoints,
)
from outbox_dispatcher.core.db import init_db, close_db
from outbox_dispatcher.services.delivery import DeliveryClient, HandlerDeliveryClient, HttpDeliveryClient
from outbox_dispatcher.services.instance import DispatcherInstance
from outbox_dispatcher.stores import OutboxEntry, tortoise_stores

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("outbox_dispatcher.service")

AUDIT_CONSUMER = "audit-log"


async def log_event(record: OutboxEntry, conn: Any):
    """Fallback in-process consumer: records every event in the log."""
    log.info(
        f"AUDIT: {record.event_type or 'event'} #{record.id} for {record.partition_key} "
        f"(partition {record.partition_id}, {len(record.payload)} bytes)"
    )


def build_consumers(raw_endpoints: str = CONSUMER_ENDPOINTS) -> Dict[str, DeliveryClient]:
    """
    One HTTP delivery client per configured endpoint. Without endpoints the
    dispatcher delivers to the in-process audit consumer instead.
    """
    endpoints = parse_consumer_endpoints(raw_endpoints)
    if not endpoints:
        log.warning("CONSUMER_ENDPOINTS is empty; delivering to the in-process audit consumer only.")
        return {AUDIT_CONSUMER: HandlerDeliveryClient({}, default=deduplicated(AUDIT_CONSUMER, log_event))}
    return {
        consumer_id: HttpDeliveryClient(url, timeout=DELIVERY_TIMEOUT)
        for consumer_id, url in endpoints.items()
    }


async def start_dispatcher(instance_id: Optional[str] = None):
    """Main entrypoint of one dispatcher instance."""
    config = DispatcherConfig().validate()
    await init_db()
    stores = await tortoise_stores(config.partition_count)
    consumers = build_consumers()
    instance = DispatcherInstance(instance_id or default_instance_id(), consumers, stores, config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, instance.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still cancels the run
            pass

    log.info(f"--- Outbox Dispatcher {instance.instance_id} Started ---")
    try:
        await instance.run()
    finally:
        for client in consumers.values():
            if isinstance(client, HttpDeliveryClient):
                await client.aclose()
        await close_db()
        log.info(f"--- Outbox Dispatcher {instance.instance_id} Stopped ---")


if __name__ == "__main__":
    try:
        asyncio.run(start_dispatcher())
    except KeyboardInterrupt:
        print("Dispatcher service stopped.")
