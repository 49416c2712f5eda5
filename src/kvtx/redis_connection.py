"""
Redis connection over redis.asyncio.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .batch import Batch, OperationKind
from .connection import AsyncConnection
from .converters import as_key_list
from .exceptions import StoreError

_LOGGER = logging.getLogger(__name__)


class RedisConnection(AsyncConnection):
    """
    Store connection backed by a Redis server.

    WATCH state lives on one server connection, so the adapter keeps a
    transactional pipeline: ``watch`` pins a pooled connection to it and
    switches it to immediate mode, reads made while watching go through
    that same connection, and ``submit`` wraps the batch in MULTI/EXEC.
    The pipeline releases its connection after every EXEC and on reset.

    Redis drops a client's watches when EXEC runs (whether or not it
    succeeds) and when the client disconnects, which is why a failed
    submit or a connection error needs no explicit UNWATCH.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client
        self._pipeline = None

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisConnection":
        """Create a connection from a ``redis://`` URL."""
        kwargs.setdefault("decode_responses", True)
        return cls(aioredis.Redis.from_url(url, **kwargs))

    @property
    def watching(self) -> bool:
        return self._pipeline is not None and self._pipeline.watching

    def _pipe(self):
        if self._pipeline is None:
            self._pipeline = self.client.pipeline(transaction=True)
        return self._pipeline

    async def _reset(self) -> None:
        pipeline, self._pipeline = self._pipeline, None
        if pipeline is None:
            return
        try:
            await pipeline.reset()
        except RedisError as e:
            # The pooled connection is already unusable; the pool replaces it.
            _LOGGER.debug("Ignoring error while resetting pipeline: %s", e)

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except RedisError as e:
            _LOGGER.warning("Redis %s failed: %s", operation, e)
            await self._reset()
            raise StoreError(f"Redis {operation} failed: {e}") from e

    async def initialize(self) -> None:
        """Check that the server is reachable."""
        async with self._guard("ping"):
            await self.client.ping()

    async def watch(self, keys: Union[str, Sequence[str]]) -> None:
        key_list = as_key_list(keys)
        async with self._guard("watch"):
            await self._pipe().watch(*key_list)

    async def unwatch(self) -> None:
        if self._pipeline is None:
            return
        async with self._guard("unwatch"):
            pipeline, self._pipeline = self._pipeline, None
            await pipeline.reset()

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            if self.watching:
                return await self._pipeline.get(key)
            return await self.client.get(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        key_list = as_key_list(keys)
        async with self._guard("mget"):
            if self.watching:
                return list(await self._pipeline.mget(key_list))
            return list(await self.client.mget(key_list))

    async def set(self, key: str, value: str) -> None:
        async with self._guard("set"):
            await self.client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete"):
            return await self.client.delete(*keys)

    async def submit(self, batch: Batch) -> Optional[List]:
        pipeline = self._pipe()
        async with self._guard("submit"):
            try:
                pipeline.multi()
                for operation in batch:
                    if operation.kind is OperationKind.SET:
                        pipeline.set(operation.key, operation.value)
                    else:
                        pipeline.delete(operation.key)
                results = await pipeline.execute()
            except WatchError:
                _LOGGER.debug("EXEC aborted: a watched key changed")
                self._pipeline = None
                return None
            self._pipeline = None
            return list(results)

    async def close(self) -> None:
        """Release the pipeline and close the client."""
        await self._reset()
        await self.client.aclose()
