"""
TransactionalStore: a codec-aware facade over one store connection.
"""

import asyncio
from typing import Any, Callable, List, Optional, Sequence, Union

from .batch import Batch
from .codec import Codec, DEFAULT_CODEC
from .config import RetryPolicy
from .connection import AsyncConnection, AsyncInMemoryConnection
from .converters import append_set, read_many, read_one, read_optional
from .exceptions import KeyNotFoundError
from .transaction import Abort, TransactionBody, TransactionOutcome, run_transaction

MISSING = object()


class TransactionalStore:
    """
    A key-value store client with optimistic transactions.

    Values are encoded with the store's codec (JSON by default). The store
    owns its connection, and holds a lock while a transaction runs on it,
    so concurrent transactions issued through one store never interleave
    their watches.

    Example usage:
        # In-memory store
        store = TransactionalStore()
        await store.initialize()

        # Redis-backed store
        from kvtx.redis_connection import RedisConnection
        store = TransactionalStore(RedisConnection.from_url("redis://localhost:6379/0"))

        await store.set("counter", 5)
        await store.update("counter", lambda value: value + 1)

        # Full transaction
        async def body(conn, batch):
            balance = await read_one(conn, "balance")
            if balance < 10:
                return Abort("insufficient-funds")
            return append_set(batch, "balance", balance - 10)

        outcome = await store.transaction(["balance"], body)
    """

    def __init__(self, connection: Optional[AsyncConnection] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 codec: Optional[Codec] = None) -> None:
        """
        Initialize the store.

        Args:
            connection: Store connection to use. If None, uses an
                        in-memory connection.
            retry_policy: Retry policy for transactions. If None, uses
                          the default bounded policy.
            codec: Value codec. If None, uses JSON.
        """
        if connection is None:
            connection = AsyncInMemoryConnection()
        self.connection = connection
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.codec = codec or DEFAULT_CODEC
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the store."""
        if not self._initialized:
            await self.connection.initialize()
            self._initialized = True

    async def transaction(self, keys: Union[str, Sequence[str]], body: TransactionBody) -> TransactionOutcome:
        """
        Run an optimistic transaction over ``keys``.

        See run_transaction for the contract of ``body``.
        """
        if not self._initialized:
            await self.initialize()

        async with self._lock:
            return await run_transaction(self.connection, keys, body, self.retry_policy)

    async def get(self, key: str) -> Any:
        """
        Get the decoded value for a key.

        Raises:
            KeyNotFoundError: If the key is not found
            DecodeError: If the stored value cannot be decoded
        """
        if not self._initialized:
            await self.initialize()
        return await read_one(self.connection, key, self.codec)

    async def get_optional(self, key: str) -> Optional[Any]:
        """Get the decoded value for a key, or None if it is absent."""
        if not self._initialized:
            await self.initialize()
        return await read_optional(self.connection, key, self.codec)

    async def get_many(self, keys: Union[str, Sequence[str]]) -> List[Any]:
        """Get decoded values for several keys; every key must exist."""
        if not self._initialized:
            await self.initialize()
        return await read_many(self.connection, keys, self.codec)

    async def set(self, key: str, value: Any) -> None:
        """Encode and store a value."""
        async def body(conn, batch: Batch) -> Batch:
            return append_set(batch, key, value, self.codec)

        (await self.transaction([key], body)).unwrap()

    async def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if the key existed
        """
        async def body(conn, batch: Batch) -> Batch:
            return batch.delete(key)

        results = (await self.transaction([key], body)).unwrap()
        return bool(results[0])

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = MISSING) -> Any:
        """
        Atomically replace the value of ``key`` with ``fn(current)``.

        ``fn`` may return an Abort to leave the key untouched; the abort
        surfaces as TransactionAbortedError. A missing key uses ``default``
        when given and raises KeyNotFoundError otherwise.

        Returns:
            The value written
        """
        written = []

        async def body(conn, batch: Batch):
            try:
                current = await read_one(conn, key, self.codec)
            except KeyNotFoundError:
                if default is MISSING:
                    raise
                current = default
            new_value = fn(current)
            if isinstance(new_value, Abort):
                return new_value
            written[:] = [new_value]
            return append_set(batch, key, new_value, self.codec)

        (await self.transaction([key], body)).unwrap()
        return written[0]

    async def close(self) -> None:
        """
        Close the store and its connection.

        This should be called when the store is no longer needed to
        properly close connections and clean up resources.
        """
        await self.connection.close()
        self._initialized = False

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
