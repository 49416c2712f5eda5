"""
kvtx: optimistic transactions for key-value stores

Watch/multi/exec transactions with automatic retry, plus helpers that
store structured values as serialized text under plain keys.
"""

from .batch import Batch, Operation, OperationKind
from .codec import Codec, JsonCodec
from .config import RetryPolicy
from .connection import AsyncConnection, AsyncInMemoryConnection, AsyncSQLiteConnection, InMemoryKeyspace
from .converters import (
    append_set,
    read_many,
    read_many_after_watch,
    read_many_optional,
    read_one,
    read_optional,
)
from .exceptions import (
    KVTxError,
    StoreError,
    CodecError,
    EncodeError,
    DecodeError,
    KeyNotFoundError,
    RetryExhaustedError,
    TransactionAbortedError,
)
from .redis_connection import RedisConnection
from .store import TransactionalStore
from .transaction import Abort, Aborted, Completed, Failed, TransactionOutcome, run_transaction

__version__ = "0.1.0"
__all__ = [
    "Abort",
    "Aborted",
    "AsyncConnection",
    "AsyncInMemoryConnection",
    "AsyncSQLiteConnection",
    "Batch",
    "Codec",
    "CodecError",
    "Completed",
    "DecodeError",
    "EncodeError",
    "Failed",
    "InMemoryKeyspace",
    "JsonCodec",
    "KVTxError",
    "KeyNotFoundError",
    "Operation",
    "OperationKind",
    "RedisConnection",
    "RetryExhaustedError",
    "RetryPolicy",
    "StoreError",
    "TransactionAbortedError",
    "TransactionOutcome",
    "TransactionalStore",
    "append_set",
    "read_many",
    "read_many_after_watch",
    "read_many_optional",
    "read_one",
    "read_optional",
    "run_transaction",
]
