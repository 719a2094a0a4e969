"""Retry state and the pure decision functions that drive it."""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from sync_kernel.models.execution import ErrorKind
from sync_kernel.remote.errors import RemoteCallError

READ_RETRYABLE: FrozenSet[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_NETWORK}
)
WRITE_RETRYABLE: FrozenSet[ErrorKind] = frozenset({ErrorKind.RATE_LIMITED})


def should_retry(
    kind: ErrorKind,
    attempt: int,
    max_attempts: int,
    retryable: FrozenSet[ErrorKind] = WRITE_RETRYABLE,
) -> bool:
    """True when `attempt` (1-based, just failed) may be followed by another."""
    return kind in retryable and attempt < max_attempts


def backoff_seconds(
    attempt: int,
    retry_after: Optional[float] = None,
    base: float = 1.0,
    exponential: bool = False,
) -> float:
    """Delay before the next attempt. A server-sent Retry-After always wins."""
    if retry_after is not None:
        return retry_after
    if exponential:
        return base * (2 ** (attempt - 1))
    return base * attempt


@dataclass
class RetryState:
    """Explicit retry bookkeeping for one logical call."""

    max_attempts: int
    attempt: int = 0
    last_error: Optional[RemoteCallError] = field(default=None)

    @property
    def retries(self) -> int:
        return max(0, self.attempt - 1)

    def begin(self) -> int:
        self.attempt += 1
        return self.attempt

    def record(self, error: RemoteCallError) -> None:
        self.last_error = error
