"""
Retry configuration for the transaction engine.
"""

import os
import random
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "KVTX_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

_MAX_EXPONENT = 64


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often, and how patiently, a conflicting transaction is retried.

    Attributes:
        max_attempts: Upper bound on attempts (the first one included).
                      None retries forever.
        base_delay: Backoff before the first retry, in seconds.
        max_delay: Cap on any single backoff delay, in seconds.
        deadline: Total seconds a transaction may spend retrying, or None.
        jitter: Scale each delay by a random factor in [0.5, 1.0].
    """

    max_attempts: Optional[int] = 50
    base_delay: float = 0.001
    max_delay: float = 0.1
    deadline: Optional[float] = None
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must not be negative")
        if self.deadline is not None and self.deadline < 0:
            raise ValueError(f"deadline must not be negative, got {self.deadline}")

    @classmethod
    def unbounded(cls) -> "RetryPolicy":
        """Retry without any attempt limit, deadline or backoff."""
        return cls(max_attempts=None, base_delay=0.0, max_delay=0.0)

    def allows_attempt(self, attempt: int, elapsed: float) -> bool:
        """Whether attempt number ``attempt`` may start after ``elapsed`` seconds."""
        if self.max_attempts is not None and attempt > self.max_attempts:
            return False
        if self.deadline is not None and elapsed >= self.deadline:
            return False
        return True

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after failed attempt number ``attempt``."""
        if self.base_delay == 0:
            return 0.0
        # Doubling stops long before the float range runs out.
        exponent = min(attempt - 1, _MAX_EXPONENT)
        delay = min(self.max_delay, self.base_delay * (2 ** exponent))
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RetryPolicy":
        """
        Build a policy from ``KVTX_*`` environment variables.

        Recognized variables: KVTX_MAX_ATTEMPTS ("0" or "none" for
        unbounded), KVTX_BASE_DELAY, KVTX_MAX_DELAY, KVTX_DEADLINE and
        KVTX_JITTER. Unset variables keep their defaults.
        """
        if environ is None:
            environ = os.environ
        kwargs = {}

        raw = environ.get(ENV_PREFIX + "MAX_ATTEMPTS")
        if raw is not None:
            if raw.strip().lower() in ("0", "none", "unbounded"):
                kwargs["max_attempts"] = None
            else:
                kwargs["max_attempts"] = _parse(raw, int, "MAX_ATTEMPTS")

        for name in ("base_delay", "max_delay", "deadline"):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                kwargs[name] = _parse(raw, float, name.upper())

        raw = environ.get(ENV_PREFIX + "JITTER")
        if raw is not None:
            value = raw.strip().lower()
            if value in _TRUE_VALUES:
                kwargs["jitter"] = True
            elif value in _FALSE_VALUES:
                kwargs["jitter"] = False
            else:
                raise ValueError(f"Invalid {ENV_PREFIX}JITTER value: {raw!r}")

        return cls(**kwargs)


def _parse(raw: str, kind: type, name: str):
    try:
        return kind(raw.strip())
    except ValueError:
        raise ValueError(f"Invalid {ENV_PREFIX}{name} value: {raw!r}")
