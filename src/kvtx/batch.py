"""
Batch builder for atomic submissions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional


class OperationKind(Enum):
    """Write operation kinds a batch can carry."""
    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """A single queued write."""
    kind: OperationKind
    key: str
    value: Optional[str] = None


class Batch:
    """
    An ordered sequence of write operations submitted atomically.

    A batch belongs to one transaction attempt. The engine hands every
    attempt a new, empty batch, so operations computed from stale reads
    never survive a retry.

    Builder methods return the batch so calls can be chained:

        batch.set("a", "1").delete("b")
    """

    def __init__(self) -> None:
        self._operations: List[Operation] = []

    def set(self, key: str, value: str) -> "Batch":
        """Queue a set of raw text ``value`` under ``key``."""
        if not isinstance(value, str):
            raise TypeError(f"Batch values must be encoded text, got {type(value).__name__}")
        self._operations.append(Operation(OperationKind.SET, key, value))
        return self

    def delete(self, *keys: str) -> "Batch":
        """Queue a delete of each of ``keys``."""
        for key in keys:
            self._operations.append(Operation(OperationKind.DELETE, key))
        return self

    @property
    def operations(self) -> List[Operation]:
        return list(self._operations)

    def keys(self) -> List[str]:
        """Keys touched by the batch, in first-use order."""
        seen: List[str] = []
        for operation in self._operations:
            if operation.key not in seen:
                seen.append(operation.key)
        return seen

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def __bool__(self) -> bool:
        # An empty batch is still a valid submission.
        return True

    def __repr__(self) -> str:
        return f"Batch({self._operations!r})"
