# scripts/seed_outbox.py
import asyncio
import random
from tortoise.transactions import in_transaction
from outbox_dispatcher.core.config import PARTITION_COUNT
from outbox_dispatcher.core.db import init_db, close_db
from outbox_dispatcher.events.outbox_utility import create_outbox_record, ensure_partition_heads

ACCOUNTS = ["account-1001", "account-1002", "account-1003", "account-1004", "account-1005"]


async def seed(events_per_account: int = 5):
    await ensure_partition_heads(PARTITION_COUNT)

    for account in ACCOUNTS:
        # One transaction per account, the way a business write would emit its events
        async with in_transaction() as conn:
            for n in range(events_per_account):
                record = await create_outbox_record(
                    partition_key=account,
                    event_type="account.balance_changed.v1",
                    payload={"account_id": account, "sequence": n, "delta": random.randint(-50, 100)},
                    conn=conn,
                )
        print(f"{account}: {events_per_account} events in partition {record.partition_id}")

    print("Outbox seeded.")


async def main():
    await init_db()
    await seed()
    await close_db()

if __name__ == "__main__":
    asyncio.run(main())
