#!/usr/bin/env python3
"""
Example demonstrating optimistic transactions with kvtx.
"""

import asyncio
import logging
import sys
import os
import tempfile

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from kvtx import (
    Abort,
    AsyncInMemoryConnection,
    AsyncSQLiteConnection,
    InMemoryKeyspace,
    RetryPolicy,
    TransactionalStore,
    append_set,
    read_many,
    read_one,
    run_transaction,
)


async def demonstrate_counter():
    """Demonstrate a retried increment."""
    print("=== Counter with a concurrent writer ===\n")

    keyspace = InMemoryKeyspace()
    conn = AsyncInMemoryConnection(keyspace)
    other = AsyncInMemoryConnection(keyspace)
    await conn.set("counter", "5")
    print("1. counter = 5")

    attempts = []

    async def increment(conn, batch):
        value = await read_one(conn, "counter")
        attempts.append(value)
        print(f"   - attempt {len(attempts)} read counter = {value}")
        if len(attempts) == 1:
            await other.set("counter", "99")
            print("   - another client set counter = 99")
        return append_set(batch, "counter", value + 1)

    outcome = await run_transaction(conn, ["counter"], increment)
    print(f"2. Outcome: {outcome}")
    print(f"   - counter is now {await read_one(conn, 'counter')}")

    await conn.close()
    await other.close()


async def demonstrate_abort():
    """Demonstrate an aborted transfer."""
    print("\n=== Aborting a transfer ===\n")

    async with TransactionalStore() as store:
        await store.set("alice", 20)
        await store.set("bob", 0)

        async def transfer(conn, batch):
            alice, bob = await read_many(conn, ["alice", "bob"])
            if alice < 50:
                return Abort({"reason": "insufficient-funds", "balance": alice})
            append_set(batch, "alice", alice - 50)
            return append_set(batch, "bob", bob + 50)

        outcome = await store.transaction(["alice", "bob"], transfer)
        print(f"1. Outcome: {outcome}")
        print(f"   - balances: {await store.get_many(['alice', 'bob'])}")


async def demonstrate_sqlite_clients():
    """Demonstrate several clients incrementing one SQLite counter."""
    print("\n=== Concurrent SQLite clients ===\n")

    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp_db.close()
    db_path = temp_db.name

    try:
        stores = [
            TransactionalStore(AsyncSQLiteConnection(db_path), RetryPolicy(jitter=True))
            for _ in range(4)
        ]
        for store in stores:
            await store.initialize()
        await stores[0].set("visits", 0)

        async def visit(store, times):
            for _ in range(times):
                await store.update("visits", lambda value: value + 1)

        await asyncio.gather(*[visit(store, 25) for store in stores])
        print(f"1. 4 clients x 25 increments -> visits = {await stores[0].get('visits')}")

        for store in stores:
            await store.close()
    finally:
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.unlink(db_path + suffix)


async def main():
    """Run all demonstrations."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    await demonstrate_counter()
    await demonstrate_abort()
    await demonstrate_sqlite_clients()


if __name__ == "__main__":
    asyncio.run(main())
