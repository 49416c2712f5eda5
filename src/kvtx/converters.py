"""
Typed read and write helpers.

These glue a codec onto a store connection so transaction bodies can work
with structured values instead of raw text:

    async def body(conn, batch):
        counter = await read_one(conn, "counter")
        return append_set(batch, "counter", counter + 1)
"""

import logging
from typing import Any, List, Optional, Sequence, Union, TYPE_CHECKING

from .batch import Batch
from .codec import Codec, DEFAULT_CODEC
from .exceptions import DecodeError, EncodeError, KeyNotFoundError

if TYPE_CHECKING:
    from .connection import AsyncConnection

_LOGGER = logging.getLogger(__name__)

Keys = Union[str, Sequence[str]]


def as_key_list(keys: Keys) -> List[str]:
    """Normalize a single key or a sequence of keys to a non-empty list."""
    key_list = [keys] if isinstance(keys, str) else list(keys)
    if not key_list:
        raise ValueError("At least one key is required")
    return key_list


def _decode(codec: Codec, key: str, raw: Any) -> Any:
    try:
        return codec.decode(raw)
    except DecodeError as e:
        if e.key is not None:
            raise
        raise DecodeError(str(e), key=key) from e


async def read_one(conn: 'AsyncConnection', key: str, codec: Optional[Codec] = None) -> Any:
    """
    Read and decode the value stored under ``key``.

    Raises:
        KeyNotFoundError: If the key is absent
        DecodeError: If the stored text cannot be decoded
        StoreError: On connection failures
    """
    raw = await conn.get(key)
    if raw is None:
        raise KeyNotFoundError([key])
    return _decode(codec or DEFAULT_CODEC, key, raw)


async def read_optional(conn: 'AsyncConnection', key: str, codec: Optional[Codec] = None) -> Optional[Any]:
    """Like read_one, but returns None for an absent key."""
    raw = await conn.get(key)
    if raw is None:
        return None
    return _decode(codec or DEFAULT_CODEC, key, raw)


async def read_many(conn: 'AsyncConnection', keys: Keys, codec: Optional[Codec] = None) -> List[Any]:
    """
    Read and decode several keys with one multi-get.

    Values are returned in key order. Single-key and multi-key calls share
    the same absence rule: if any requested key is missing the whole call
    fails with KeyNotFoundError naming every missing key.
    """
    key_list = as_key_list(keys)
    codec = codec or DEFAULT_CODEC
    raw_values = await conn.mget(key_list)

    missing = [key for key, raw in zip(key_list, raw_values) if raw is None]
    if missing:
        raise KeyNotFoundError(missing)
    return [_decode(codec, key, raw) for key, raw in zip(key_list, raw_values)]


async def read_many_optional(conn: 'AsyncConnection', keys: Keys,
                             codec: Optional[Codec] = None) -> List[Optional[Any]]:
    """Multi-get where absent keys decode to None instead of failing."""
    key_list = as_key_list(keys)
    codec = codec or DEFAULT_CODEC
    raw_values = await conn.mget(key_list)
    return [None if raw is None else _decode(codec, key, raw) for key, raw in zip(key_list, raw_values)]


async def read_many_after_watch(conn: 'AsyncConnection', keys: Keys,
                                codec: Optional[Codec] = None) -> List[Any]:
    """Watch ``keys`` and then read them, so the read is protected by the watch."""
    key_list = as_key_list(keys)
    await conn.watch(key_list)
    return await read_many(conn, key_list, codec)


def append_set(batch: Batch, key: str, value: Any, codec: Optional[Codec] = None) -> Batch:
    """
    Encode ``value`` and queue a set of it under ``key``.

    The value is encoded before the batch is touched, so an EncodeError
    leaves the batch exactly as it was.
    """
    codec = codec or DEFAULT_CODEC
    try:
        raw = codec.encode(value)
    except EncodeError as e:
        _LOGGER.debug("Encoding value for key %s failed: %s", key, e)
        if e.key is not None:
            raise
        raise EncodeError(str(e), key=key) from e
    return batch.set(key, raw)
