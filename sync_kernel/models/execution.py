"""Outcome of applying one plan item."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from sync_kernel.models.plan import PlanAction


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the fetcher, executor and summary."""

    NONE = "none"
    RATE_LIMITED = "rate_limited"                   # retryable
    TRANSIENT_NETWORK = "transient_network"         # retryable
    VALIDATION_REJECTED = "validation_rejected"     # permanent, remote-reported
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"   # soft success
    PARENT_NOT_FOUND = "parent_not_found"           # benign no-op
    AUTH_EXPIRED = "auth_expired"                   # fatal to the session
    UNKNOWN = "unknown"                             # permanent, raw body logged


class ExecutionResult(BaseModel):
    """Outcome of one plan item."""

    entity_key: str
    action: PlanAction
    success: bool
    http_status: Optional[int] = None
    error_kind: ErrorKind = ErrorKind.NONE
    retries: int = 0
    message: Optional[str] = None
    parent_code: Optional[str] = None
    parent_name: Optional[str] = None
    entity_name: Optional[str] = None
    remote_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    old_rate_minor_units: Optional[int] = None
    new_rate_minor_units: Optional[int] = None
    old_duration_minutes: Optional[int] = None
    new_duration_minutes: Optional[int] = None
    dry_run: bool = False

    @property
    def is_failure(self) -> bool:
        """A failure that needs attention (not-found and replays are not)."""
        return not self.success and self.error_kind != ErrorKind.PARENT_NOT_FOUND
