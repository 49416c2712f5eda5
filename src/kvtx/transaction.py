"""
Optimistic-locking transactions: watch, build a batch, submit, retry.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union, TYPE_CHECKING

from .batch import Batch
from .config import RetryPolicy
from .converters import as_key_list
from .exceptions import (
    CodecError,
    KeyNotFoundError,
    RetryExhaustedError,
    StoreError,
    TransactionAbortedError,
)

if TYPE_CHECKING:
    from .connection import AsyncConnection

_LOGGER = logging.getLogger(__name__)


class Abort(Exception):
    """
    Ends a transaction early with a caller-defined payload.

    A transaction body may either ``return Abort(payload)`` or
    ``raise Abort(payload)``; the latter also works from helpers the body
    calls. Aborting unwatches the keys and never retries.
    """

    def __init__(self, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(payload)


class TransactionOutcome(ABC):
    """Base class for the result of run_transaction."""

    ok = False
    attempts: int

    @abstractmethod
    def unwrap(self) -> Any:
        """Return the committed value, or raise what ended the transaction."""
        pass


@dataclass(frozen=True)
class Completed(TransactionOutcome):
    """The batch was committed; ``value`` holds one result per operation."""
    value: Any
    attempts: int = 1
    ok = True

    def unwrap(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Aborted(TransactionOutcome):
    """The body aborted with ``payload``."""
    payload: Any
    attempts: int = 1

    def unwrap(self) -> Any:
        raise TransactionAbortedError(self.payload)


@dataclass(frozen=True)
class Failed(TransactionOutcome):
    """The transaction ended with a store, codec, or retry error."""
    error: Exception
    attempts: int = 1

    def unwrap(self) -> Any:
        raise self.error


class Attempt:
    """One pass of watch -> body -> submit, with its own empty batch."""

    def __init__(self, transaction_id: str, number: int) -> None:
        self.transaction_id = transaction_id
        self.number = number
        self.batch = Batch()

    def __repr__(self) -> str:
        return f"Attempt({self.transaction_id}#{self.number})"


TransactionBody = Callable[['AsyncConnection', Batch], Awaitable[Any]]


async def _release(connection: 'AsyncConnection') -> None:
    try:
        await connection.unwatch()
    except StoreError as e:
        _LOGGER.warning("Unwatch failed while propagating an error: %s", e)


async def _unwatch_then(connection: 'AsyncConnection', outcome: TransactionOutcome) -> TransactionOutcome:
    try:
        await connection.unwatch()
    except StoreError as e:
        _LOGGER.warning("Unwatch failed: %s", e)
        return Failed(e, outcome.attempts)
    return outcome


async def run_transaction(
    connection: 'AsyncConnection',
    keys: Union[str, Sequence[str]],
    body: TransactionBody,
    retry_policy: Optional[RetryPolicy] = None,
) -> TransactionOutcome:
    """
    Run ``body`` as an optimistic transaction over ``keys``.

    Each attempt watches ``keys``, calls ``await body(connection, batch)``
    with a fresh batch, and submits what the body returns. The body may
    read through ``connection``; those reads are protected by the watch.

    The body's result decides what happens next:
        Batch or None: submit the batch (None means the batch it was given)
        Abort(payload), returned or raised: unwatch, return Aborted
        StoreError raised: return Failed without retrying

    If a watched key changed before the submit, the store rejects the batch
    and the whole attempt is run again, subject to ``retry_policy``.

    Returns:
        Completed, Aborted or Failed
    """
    key_list = as_key_list(keys)
    policy = retry_policy if retry_policy is not None else RetryPolicy()
    transaction_id = uuid.uuid4().hex[:12]
    loop = asyncio.get_running_loop()
    started = loop.time()
    number = 0

    while True:
        number += 1
        attempt = Attempt(transaction_id, number)
        _LOGGER.debug("Starting %r on keys %s", attempt, key_list)

        try:
            await connection.watch(key_list)
        except StoreError as e:
            _LOGGER.warning("Transaction %s could not watch keys: %s", transaction_id, e)
            return Failed(e, number)

        try:
            result = await body(connection, attempt.batch)
        except Abort as abort:
            result = abort
        except StoreError as e:
            # The store has already dropped the connection's watches.
            _LOGGER.warning("Transaction %s failed in body: %s", transaction_id, e)
            return Failed(e, number)
        except (CodecError, KeyNotFoundError) as e:
            _LOGGER.debug("Transaction %s failed in body: %s", transaction_id, e)
            return await _unwatch_then(connection, Failed(e, number))
        except BaseException:
            await _release(connection)
            raise

        if isinstance(result, Abort):
            _LOGGER.info("Transaction %s aborted: %r", transaction_id, result.payload)
            return await _unwatch_then(connection, Aborted(result.payload, number))

        batch = attempt.batch if result is None else result
        if not isinstance(batch, Batch):
            await _release(connection)
            raise TypeError(
                f"Transaction body must return a Batch, None or Abort, got {type(result).__name__}"
            )

        try:
            results = await connection.submit(batch)
        except StoreError as e:
            _LOGGER.warning("Transaction %s failed to submit: %s", transaction_id, e)
            return Failed(e, number)
        except BaseException:
            await _release(connection)
            raise

        if results is not None:
            _LOGGER.debug("Transaction %s committed on attempt %d", transaction_id, number)
            return await _unwatch_then(connection, Completed(results, number))

        elapsed = loop.time() - started
        if not policy.allows_attempt(number + 1, elapsed):
            if policy.max_attempts is not None and number >= policy.max_attempts:
                reason = f"attempt limit of {policy.max_attempts} reached"
            else:
                reason = f"deadline of {policy.deadline}s exceeded"
            _LOGGER.warning("Transaction %s gave up on keys %s: %s", transaction_id, key_list, reason)
            return Failed(RetryExhaustedError(number, reason), number)

        delay = policy.delay_for(number)
        _LOGGER.debug("Transaction %s conflicted on attempt %d, retrying in %.4fs",
                      transaction_id, number, delay)
        if delay:
            await asyncio.sleep(delay)
