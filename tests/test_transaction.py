"""
Tests for the transaction retry engine.
"""

import asyncio
import pytest
import sys
import os
from unittest.mock import AsyncMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kvtx import (
    Abort,
    Aborted,
    AsyncInMemoryConnection,
    Batch,
    Completed,
    Failed,
    InMemoryKeyspace,
    RetryPolicy,
    TransactionOutcome,
    append_set,
    read_one,
    run_transaction,
)
from kvtx.exceptions import (
    DecodeError,
    EncodeError,
    KeyNotFoundError,
    RetryExhaustedError,
    StoreError,
    TransactionAbortedError,
)


NO_BACKOFF = RetryPolicy(max_attempts=10, base_delay=0.0)


class RecordingConnection(AsyncInMemoryConnection):
    """In-memory connection that records the calls the engine makes."""

    def __init__(self, keyspace=None):
        super().__init__(keyspace)
        self.calls = []

    async def watch(self, keys):
        self.calls.append("watch")
        await super().watch(keys)

    async def unwatch(self):
        self.calls.append("unwatch")
        await super().unwatch()

    async def submit(self, batch):
        self.calls.append("submit")
        return await super().submit(batch)


async def increment_body(conn, batch):
    value = await read_one(conn, "counter")
    return append_set(batch, "counter", value + 1)


class TestCommit:
    """Test transactions that commit."""

    @pytest.mark.asyncio
    async def test_commits_on_first_attempt_without_contention(self):
        """Test an uncontended transaction commits once."""
        conn = RecordingConnection()
        await conn.set("counter", "5")

        outcome = await run_transaction(conn, ["counter"], increment_body, NO_BACKOFF)

        assert isinstance(outcome, Completed)
        assert outcome.ok
        assert outcome.attempts == 1
        assert outcome.value == [True]
        assert conn.calls == ["watch", "submit", "unwatch"]
        assert await conn.get("counter") == "6"
        assert conn.watched_keys == []

    @pytest.mark.asyncio
    async def test_body_returning_none_submits_given_batch(self):
        """Test that a body may fill the batch and return nothing."""
        conn = AsyncInMemoryConnection()

        async def body(conn, batch):
            batch.set("a", "1").set("b", "2")

        outcome = await run_transaction(conn, "a", body, NO_BACKOFF)

        assert outcome.value == [True, True]
        assert await conn.mget(["a", "b"]) == ["1", "2"]

    @pytest.mark.asyncio
    async def test_empty_batch_commits(self):
        """Test that submitting an empty batch is a valid commit."""
        conn = AsyncInMemoryConnection()

        async def body(conn, batch):
            return batch

        outcome = await run_transaction(conn, ["a"], body, NO_BACKOFF)

        assert outcome == Completed([], 1)

    @pytest.mark.asyncio
    async def test_delete_results(self):
        """Test that delete operations report how many keys existed."""
        conn = AsyncInMemoryConnection()
        await conn.set("a", "1")

        async def body(conn, batch):
            return batch.delete("a", "missing")

        outcome = await run_transaction(conn, ["a"], body, NO_BACKOFF)

        assert outcome.unwrap() == [1, 0]
        assert await conn.get("a") is None


class TestRetry:
    """Test retries after a watched key changes."""

    @pytest.mark.asyncio
    async def test_retries_when_watched_key_changes(self):
        """Test the body runs again after a concurrent write and then commits."""
        keyspace = InMemoryKeyspace()
        conn = RecordingConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        await conn.set("counter", "5")
        runs = []

        async def body(conn, batch):
            value = await read_one(conn, "counter")
            runs.append(value)
            if len(runs) == 1:
                await other.set("counter", "99")
            return append_set(batch, "counter", value + 1)

        outcome = await run_transaction(conn, ["counter"], body, NO_BACKOFF)

        assert isinstance(outcome, Completed)
        assert outcome.attempts == 2
        assert runs == [5, 99]
        assert await conn.get("counter") == "100"
        # No unwatch after the rejected submit, one after the commit.
        assert conn.calls == ["watch", "submit", "watch", "submit", "unwatch"]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_a_fresh_batch(self):
        """Test operations from a rejected attempt are not resubmitted."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        batches = []

        async def body(conn, batch):
            assert len(batch) == 0
            batches.append(batch)
            if len(batches) == 1:
                batch.set("stale", "1")
                await other.set("k", "changed")
                return batch
            return batch.set("fresh", "1")

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert outcome.attempts == 2
        assert batches[0] is not batches[1]
        assert await conn.get("stale") is None
        assert await conn.get("fresh") == "1"

    @pytest.mark.asyncio
    async def test_retry_limit_fails_with_retry_exhausted(self):
        """Test a permanently contended key stops at the attempt limit."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        runs = []

        async def body(conn, batch):
            runs.append(1)
            await other.set("hot", str(len(runs)))
            return batch.set("hot", "mine")

        policy = RetryPolicy(max_attempts=3, base_delay=0.0)
        outcome = await run_transaction(conn, ["hot"], body, policy)

        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, RetryExhaustedError)
        assert outcome.error.attempts == 3
        assert outcome.attempts == 3
        assert len(runs) == 3
        assert await conn.get("hot") == "3"

    @pytest.mark.asyncio
    async def test_deadline_fails_with_retry_exhausted(self):
        """Test a zero deadline allows exactly one attempt."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)

        async def body(conn, batch):
            await other.set("hot", "x")
            return batch.set("hot", "mine")

        policy = RetryPolicy(max_attempts=None, base_delay=0.0, deadline=0.0)
        outcome = await run_transaction(conn, ["hot"], body, policy)

        assert isinstance(outcome.error, RetryExhaustedError)
        assert "deadline" in str(outcome.error)
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_unbounded_policy_keeps_retrying(self):
        """Test the unbounded policy retries until contention stops."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        runs = []

        async def body(conn, batch):
            runs.append(1)
            if len(runs) < 75:
                await other.set("hot", str(len(runs)))
            return batch.set("hot", "mine")

        outcome = await run_transaction(conn, ["hot"], body, RetryPolicy.unbounded())

        assert outcome.ok
        assert outcome.attempts == 75
        assert await conn.get("hot") == "mine"

    @pytest.mark.asyncio
    async def test_long_contention_with_unbounded_backoff_policy(self):
        """Test retries continue past a thousand conflicts with backoff configured."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        runs = []

        async def body(conn, batch):
            runs.append(1)
            if len(runs) <= 1100:
                await other.set("hot", str(len(runs)))
            return batch.set("hot", "mine")

        policy = RetryPolicy(max_attempts=None, base_delay=1e-300, max_delay=0.0)
        outcome = await run_transaction(conn, ["hot"], body, policy)

        assert outcome.ok
        assert outcome.attempts == 1101
        assert await conn.get("hot") == "mine"


class TestAbort:
    """Test caller-initiated aborts."""

    @pytest.mark.asyncio
    async def test_returned_abort_unwatches_and_returns_payload(self):
        """Test returning Abort yields Aborted with the exact payload."""
        conn = RecordingConnection()
        await conn.set("counter", "5")

        async def body(conn, batch):
            append_set(batch, "counter", 0)
            return Abort("invalid-state")

        outcome = await run_transaction(conn, ["counter"], body, NO_BACKOFF)

        assert outcome == Aborted("invalid-state", 1)
        assert not outcome.ok
        assert conn.calls == ["watch", "unwatch"]
        assert await conn.get("counter") == "5"
        assert conn.watched_keys == []

    @pytest.mark.asyncio
    async def test_raised_abort_from_nested_helper(self):
        """Test raising Abort from a helper called by the body."""
        conn = RecordingConnection()
        payload = {"reason": "too-big", "limit": 10}

        def check(value):
            if value > 10:
                raise Abort(payload)

        async def body(conn, batch):
            check(11)
            return batch

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert isinstance(outcome, Aborted)
        assert outcome.payload is payload
        assert conn.calls == ["watch", "unwatch"]

    @pytest.mark.asyncio
    async def test_abort_is_never_retried(self):
        """Test an abort ends the loop even under contention."""
        keyspace = InMemoryKeyspace()
        conn = AsyncInMemoryConnection(keyspace)
        other = AsyncInMemoryConnection(keyspace)
        runs = []

        async def body(conn, batch):
            runs.append(1)
            await other.set("k", "changed")
            return Abort(None)

        for _ in range(3):
            outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)
            assert outcome == Aborted(None, 1)
        assert len(runs) == 3

    @pytest.mark.asyncio
    async def test_unwrap_aborted_raises(self):
        """Test unwrap() on an aborted outcome raises with the payload."""
        with pytest.raises(TransactionAbortedError) as excinfo:
            Aborted("nope").unwrap()
        assert excinfo.value.payload == "nope"

    @pytest.mark.asyncio
    async def test_failed_unwatch_on_abort_is_a_failure(self):
        """Test a store error while unwatching surfaces as Failed."""
        conn = AsyncInMemoryConnection()
        conn.unwatch = AsyncMock(side_effect=StoreError("gone"))

        async def body(conn, batch):
            return Abort("x")

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, StoreError)


class TestFailures:
    """Test store and codec failures."""

    @pytest.mark.asyncio
    async def test_watch_failure_is_fatal(self):
        """Test a failing watch ends the transaction before the body runs."""
        conn = AsyncInMemoryConnection()
        conn.watch = AsyncMock(side_effect=StoreError("connection refused"))
        body = AsyncMock()

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert isinstance(outcome, Failed)
        assert str(outcome.error) == "connection refused"
        body.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_error_in_body_fails_without_unwatch(self):
        """Test a store error raised by the body propagates without retry."""
        conn = RecordingConnection()
        error = StoreError("read failed")

        async def body(conn, batch):
            raise error

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert outcome == Failed(error, 1)
        assert conn.calls == ["watch"]

    @pytest.mark.asyncio
    async def test_closed_connection_fails_in_body(self):
        """Test reads on a closed connection surface as Failed."""
        conn = AsyncInMemoryConnection()

        async def body(c, batch):
            await conn.close()
            await read_one(c, "k")

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert isinstance(outcome.error, StoreError)
        assert conn.watched_keys == []

    @pytest.mark.asyncio
    async def test_submit_failure_is_fatal(self):
        """Test a store error during submit is not retried."""
        conn = AsyncInMemoryConnection()
        await conn.set("counter", "1")
        conn.submit = AsyncMock(side_effect=StoreError("broken pipe"))

        outcome = await run_transaction(conn, ["counter"], increment_body, NO_BACKOFF)

        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, StoreError)
        assert conn.submit.await_count == 1
        assert await conn.get("counter") == "1"

    @pytest.mark.asyncio
    async def test_missing_key_fails_and_unwatches(self):
        """Test KeyNotFoundError in the body fails the transaction."""
        conn = RecordingConnection()

        outcome = await run_transaction(conn, ["counter"], increment_body, NO_BACKOFF)

        assert isinstance(outcome.error, KeyNotFoundError)
        assert outcome.error.keys == ["counter"]
        assert conn.calls == ["watch", "unwatch"]

    @pytest.mark.asyncio
    async def test_decode_error_fails_and_unwatches(self):
        """Test corrupt stored text fails with DecodeError."""
        conn = RecordingConnection()
        await conn.set("counter", "{not json")

        outcome = await run_transaction(conn, ["counter"], increment_body, NO_BACKOFF)

        assert isinstance(outcome.error, DecodeError)
        assert outcome.error.key == "counter"
        assert conn.calls == ["watch", "unwatch"]
        with pytest.raises(DecodeError):
            outcome.unwrap()

    @pytest.mark.asyncio
    async def test_encode_error_fails_and_unwatches(self):
        """Test an unencodable value fails with EncodeError."""
        conn = RecordingConnection()

        async def body(conn, batch):
            return append_set(batch, "k", object())

        outcome = await run_transaction(conn, ["k"], body, NO_BACKOFF)

        assert isinstance(outcome.error, EncodeError)
        assert conn.calls == ["watch", "unwatch"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_propagates_after_unwatch(self):
        """Test programming errors in the body are re-raised unchanged."""
        conn = RecordingConnection()

        async def body(conn, batch):
            raise ZeroDivisionError("bug")

        with pytest.raises(ZeroDivisionError):
            await run_transaction(conn, ["k"], body, NO_BACKOFF)
        assert conn.calls == ["watch", "unwatch"]

    @pytest.mark.asyncio
    async def test_cancelled_body_unwatches(self):
        """Test cancellation inside the body releases the watch and propagates."""
        conn = RecordingConnection()

        async def body(conn, batch):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await run_transaction(conn, ["k"], body, NO_BACKOFF)
        assert conn.calls == ["watch", "unwatch"]
        assert conn.watched_keys == []

    @pytest.mark.asyncio
    async def test_cancelled_submit_unwatches(self):
        """Test cancellation during submit releases the watch and propagates."""
        conn = RecordingConnection()
        conn.submit = AsyncMock(side_effect=asyncio.CancelledError())

        async def body(conn, batch):
            return batch.set("k", "v")

        with pytest.raises(asyncio.CancelledError):
            await run_transaction(conn, ["k"], body, NO_BACKOFF)
        assert conn.calls == ["watch", "unwatch"]
        assert conn.watched_keys == []
        assert await conn.get("k") is None

    @pytest.mark.asyncio
    async def test_invalid_body_result_raises_type_error(self):
        """Test a body returning something other than a batch is rejected."""
        conn = RecordingConnection()

        async def body(conn, batch):
            return "done"

        with pytest.raises(TypeError):
            await run_transaction(conn, ["k"], body, NO_BACKOFF)
        assert conn.calls == ["watch", "unwatch"]

    @pytest.mark.asyncio
    async def test_empty_key_set_is_rejected(self):
        """Test that a transaction needs at least one key."""
        conn = RecordingConnection()

        with pytest.raises(ValueError):
            await run_transaction(conn, [], increment_body, NO_BACKOFF)
        assert conn.calls == []


class TestOutcomes:
    """Test outcome helpers."""

    def test_completed_unwrap(self):
        """Test unwrap() returns the committed results."""
        assert Completed([True], 2).unwrap() == [True]

    def test_failed_unwrap_reraises(self):
        """Test unwrap() re-raises the failure."""
        error = StoreError("x")
        with pytest.raises(StoreError) as excinfo:
            Failed(error).unwrap()
        assert excinfo.value is error

    def test_batch_rejects_unencoded_values(self):
        """Test that batches only carry encoded text."""
        with pytest.raises(TypeError):
            Batch().set("k", 1)

    def test_outcome_base_is_abstract(self):
        """Test the outcome base class cannot be instantiated."""
        with pytest.raises(TypeError):
            TransactionOutcome()
        assert isinstance(Completed([]), TransactionOutcome)
