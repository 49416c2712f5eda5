"""
Async store connections with watch / multi / exec semantics.
"""

import aiosqlite
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .batch import Batch, Operation, OperationKind
from .converters import as_key_list
from .exceptions import StoreError

_LOGGER = logging.getLogger(__name__)


class AsyncConnection(ABC):
    """
    Abstract base class for store connections.

    Watch state is scoped to the connection: ``watch`` marks keys, and the
    next ``submit`` on the same connection only applies its batch if none
    of the marked keys changed in between. Every submit, successful or not,
    clears the watch set, and so does any failure raised as StoreError.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Open the connection."""
        pass

    @abstractmethod
    async def watch(self, keys: Union[str, Sequence[str]]) -> None:
        """Mark keys for the optimistic lock of the next submit."""
        pass

    @abstractmethod
    async def unwatch(self) -> None:
        """Forget all watched keys."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get the raw value of a key, or None if it is absent."""
        pass

    @abstractmethod
    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Get raw values for several keys, None for each absent one."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Set a raw value outside of any batch."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys outside of any batch; returns how many existed."""
        pass

    @abstractmethod
    async def submit(self, batch: Batch) -> Optional[List]:
        """
        Apply a batch atomically.

        Returns one result per operation, or None if a watched key changed
        since it was watched, in which case nothing was applied.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


class InMemoryKeyspace:
    """
    Key-value data shared by in-memory connections.

    Every write bumps the key's version; watches compare versions.
    """

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.versions: Dict[str, int] = {}
        self.lock = asyncio.Lock()

    def version(self, key: str) -> int:
        return self.versions.get(key, 0)

    def write(self, key: str, value: str) -> None:
        self.data[key] = value
        self.versions[key] = self.version(key) + 1

    def remove(self, key: str) -> int:
        if key not in self.data:
            return 0
        del self.data[key]
        self.versions[key] = self.version(key) + 1
        return 1

    def apply(self, operation: Operation):
        if operation.kind is OperationKind.SET:
            self.write(operation.key, operation.value)
            return True
        return self.remove(operation.key)


class AsyncInMemoryConnection(AsyncConnection):
    """
    Async in-memory connection for testing.

    Connections built on the same keyspace behave like separate clients of
    one store.
    """

    def __init__(self, keyspace: Optional[InMemoryKeyspace] = None):
        self.keyspace = keyspace if keyspace is not None else InMemoryKeyspace()
        self._watched: Dict[str, int] = {}
        self._closed = False

    @property
    def watched_keys(self) -> List[str]:
        return list(self._watched)

    def _check_open(self) -> None:
        if self._closed:
            self._watched.clear()
            raise StoreError("Connection is closed")

    async def initialize(self) -> None:
        """Initialize in-memory connection."""
        self._closed = False

    async def watch(self, keys: Union[str, Sequence[str]]) -> None:
        self._check_open()
        async with self.keyspace.lock:
            for key in as_key_list(keys):
                self._watched.setdefault(key, self.keyspace.version(key))

    async def unwatch(self) -> None:
        self._check_open()
        self._watched.clear()

    async def get(self, key: str) -> Optional[str]:
        self._check_open()
        async with self.keyspace.lock:
            return self.keyspace.data.get(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        self._check_open()
        async with self.keyspace.lock:
            return [self.keyspace.data.get(key) for key in as_key_list(keys)]

    async def set(self, key: str, value: str) -> None:
        self._check_open()
        async with self.keyspace.lock:
            self.keyspace.write(key, value)

    async def delete(self, *keys: str) -> int:
        self._check_open()
        async with self.keyspace.lock:
            return sum(self.keyspace.remove(key) for key in keys)

    async def submit(self, batch: Batch) -> Optional[List]:
        self._check_open()
        async with self.keyspace.lock:
            watched, self._watched = self._watched, {}
            changed = [key for key, version in watched.items() if self.keyspace.version(key) != version]
            if changed:
                _LOGGER.debug("Watched keys changed before submit: %s", changed)
                return None
            return [self.keyspace.apply(operation) for operation in batch]

    async def close(self) -> None:
        """Close the connection."""
        self._closed = True
        self._watched.clear()


class AsyncSQLiteConnection(AsyncConnection):
    """
    Async SQLite-based connection.

    Rows carry a version counter that every write bumps. Deleted keys stay
    behind as rows with a NULL value, so a delete followed by a re-create
    never brings back a version someone is watching. Several connections
    opened on the same database file act as independent clients.
    """

    def __init__(self, db_path: str = "kvtx.db"):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None
        self._watched: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def watched_keys(self) -> List[str]:
        return list(self._watched)

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except (aiosqlite.Error, ValueError) as e:
            self._watched.clear()
            _LOGGER.warning("SQLite %s failed on %s: %s", operation, self.db_path, e)
            raise StoreError(f"SQLite {operation} failed: {e}") from e

    async def initialize(self) -> None:
        """Open the database and create the data table."""
        async with self._lock, self._guard("initialize"):
            if self.connection is None:
                self.connection = await aiosqlite.connect(self.db_path, isolation_level=None)
                await self.connection.execute("PRAGMA journal_mode=WAL")
                await self.connection.execute("""
                    CREATE TABLE IF NOT EXISTS kv_data (
                        key TEXT PRIMARY KEY,
                        value TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

    async def _connect(self) -> aiosqlite.Connection:
        if not self.connection:
            await self.initialize()
        return self.connection

    async def _versions(self, conn: aiosqlite.Connection, keys: Iterable[str]) -> Dict[str, int]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        cursor = await conn.execute(
            f"SELECT key, version FROM kv_data WHERE key IN ({placeholders})", keys
        )
        rows = await cursor.fetchall()
        return {key: version for key, version in rows}

    async def _write(self, conn: aiosqlite.Connection, key: str, value: str) -> None:
        await conn.execute("""
            INSERT INTO kv_data (key, value, version) VALUES (?, ?, 1)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                version = kv_data.version + 1,
                updated_at = CURRENT_TIMESTAMP
        """, (key, value))

    async def _remove(self, conn: aiosqlite.Connection, key: str) -> int:
        cursor = await conn.execute("""
            UPDATE kv_data SET value = NULL, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE key = ? AND value IS NOT NULL
        """, (key,))
        return cursor.rowcount

    async def watch(self, keys: Union[str, Sequence[str]]) -> None:
        key_list = as_key_list(keys)
        conn = await self._connect()
        async with self._lock, self._guard("watch"):
            versions = await self._versions(conn, key_list)
            for key in key_list:
                self._watched.setdefault(key, versions.get(key, 0))

    async def unwatch(self) -> None:
        self._watched.clear()

    async def get(self, key: str) -> Optional[str]:
        conn = await self._connect()
        async with self._lock, self._guard("get"):
            cursor = await conn.execute("SELECT value FROM kv_data WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row[0] if row else None

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        key_list = as_key_list(keys)
        conn = await self._connect()
        async with self._lock, self._guard("mget"):
            unique = list(dict.fromkeys(key_list))
            placeholders = ", ".join("?" for _ in unique)
            cursor = await conn.execute(
                f"SELECT key, value FROM kv_data WHERE key IN ({placeholders})", unique
            )
            found = {key: value for key, value in await cursor.fetchall()}
            return [found.get(key) for key in key_list]

    async def set(self, key: str, value: str) -> None:
        conn = await self._connect()
        async with self._lock, self._guard("set"):
            await self._write(conn, key, value)

    async def delete(self, *keys: str) -> int:
        conn = await self._connect()
        async with self._lock, self._guard("delete"):
            removed = 0
            for key in keys:
                removed += await self._remove(conn, key)
            return removed

    async def submit(self, batch: Batch) -> Optional[List]:
        conn = await self._connect()
        async with self._lock, self._guard("submit"):
            watched, self._watched = self._watched, {}
            await conn.execute("BEGIN IMMEDIATE")
            try:
                current = await self._versions(conn, watched)
                changed = [key for key, version in watched.items() if current.get(key, 0) != version]
                if changed:
                    _LOGGER.debug("Watched keys changed before submit: %s", changed)
                    await conn.execute("ROLLBACK")
                    return None

                results = []
                for operation in batch:
                    if operation.kind is OperationKind.SET:
                        await self._write(conn, operation.key, operation.value)
                        results.append(True)
                    else:
                        results.append(await self._remove(conn, operation.key))
                await conn.execute("COMMIT")
            except BaseException:
                # Cancellation too, or the write lock stays held.
                await conn.execute("ROLLBACK")
                raise
            return results

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            self._watched.clear()
            if self.connection:
                await self.connection.close()
                self.connection = None
