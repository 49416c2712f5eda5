"""
Custom exceptions for the transaction helpers.
"""

from typing import Any, Optional, Sequence


class KVTxError(Exception):
    """Base exception for all kvtx errors."""
    pass


class StoreError(KVTxError):
    """Exception raised for connection or protocol failures of the store."""
    pass


class CodecError(KVTxError):
    """Base exception for value serialization failures."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        if key is not None:
            message = f"{message} (key '{key}')"
        super().__init__(message)


class EncodeError(CodecError):
    """Exception raised when a value cannot be encoded."""
    pass


class DecodeError(CodecError):
    """Exception raised when stored text cannot be decoded."""
    pass


class KeyNotFoundError(KVTxError):
    """Exception raised when one or more keys are absent from the store."""

    def __init__(self, keys: Sequence[str]) -> None:
        self.keys = list(keys)
        names = ", ".join(f"'{key}'" for key in self.keys)
        super().__init__(f"Key {names} not found" if len(self.keys) == 1 else f"Keys {names} not found")


class RetryExhaustedError(KVTxError):
    """Exception raised when a transaction keeps conflicting past its retry policy."""

    def __init__(self, attempts: int, reason: str = "attempt limit reached") -> None:
        self.attempts = attempts
        super().__init__(f"Transaction gave up after {attempts} attempt(s): {reason}")


class TransactionAbortedError(KVTxError):
    """Exception raised when unwrapping the outcome of an aborted transaction."""

    def __init__(self, payload: Any) -> None:
        self.payload = payload
        super().__init__(f"Transaction aborted: {payload!r}")
