"""
Remote call errors and their classification.

Every non-2xx response or transport failure at the HTTP boundary becomes a
`RemoteCallError` carrying an `ErrorKind`; callers decide from the kind
alone whether to retry, record, soften, or abort.
"""

import json
from typing import Any, Optional

from sync_kernel.models.execution import ErrorKind

RAW_BODY_LIMIT = 200

_IDEMPOTENCY_MARKERS = ("idempotency", "idempotent")
_CONFLICT_MARKERS = ("already", "conflict", "duplicate", "in use", "been used", "reused")


class RemoteCallError(Exception):
    """A classified failure of one remote call."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.body = body

    def __str__(self) -> str:
        if self.status is not None:
            return f"HTTP {self.status} ({self.kind.value}): {self.message}"
        return f"{self.kind.value}: {self.message}"


class AuthExpiredError(RemoteCallError):
    """The bearer token was rejected. Fatal to the whole session."""

    def __init__(self, message: str = "Access token rejected", status: Optional[int] = 401, partial_results=None):
        super().__init__(ErrorKind.AUTH_EXPIRED, message, status=status)
        self.partial_results = list(partial_results or [])


class BatchTooLargeError(ValueError):
    """The plan touches more parents than one run may mutate."""

    def __init__(self, parent_count: int, limit: int):
        super().__init__(
            f"Batch too large: {parent_count} parents. Maximum {limit} parents per "
            f"execution to stay within the run's time budget. Split the plan."
        )
        self.parent_count = parent_count
        self.limit = limit


def _parse_json(body: Optional[str]) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def _validation_messages(payload: dict) -> list:
    messages = []
    for err in payload.get("ValidationErrors") or []:
        if isinstance(err, dict) and err.get("Message"):
            messages.append(str(err["Message"]))
    for element in payload.get("Elements") or []:
        if isinstance(element, dict):
            messages.extend(_validation_messages(element))
    return messages


def extract_error_message(body: Optional[str]) -> str:
    """
    Pull the most useful message out of an error body.

    Priority: `Message`, then `message`, then the joined
    `ValidationErrors[].Message`, then the raw body cut to 200 chars.
    """
    payload = _parse_json(body)
    if isinstance(payload, dict):
        if payload.get("Message"):
            return str(payload["Message"])
        if payload.get("message"):
            return str(payload["message"])
        messages = _validation_messages(payload)
        if messages:
            return "; ".join(messages)
    return (body or "")[:RAW_BODY_LIMIT]


def is_idempotency_collision(body: Optional[str]) -> bool:
    text = (body or "").lower()
    return any(m in text for m in _IDEMPOTENCY_MARKERS) and any(
        m in text for m in _CONFLICT_MARKERS
    )


def classify_status(status: int, body: Optional[str] = None) -> ErrorKind:
    """Map an HTTP status (and, for 4xx, the body) onto the error taxonomy."""
    if 200 <= status < 300:
        return ErrorKind.NONE
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 401:
        return ErrorKind.AUTH_EXPIRED
    if status == 409:
        return ErrorKind.IDEMPOTENCY_CONFLICT
    if 400 <= status < 500:
        if is_idempotency_collision(body):
            return ErrorKind.IDEMPOTENCY_CONFLICT
        return ErrorKind.VALIDATION_REJECTED
    if status >= 500:
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.UNKNOWN


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a `Retry-After` header; HTTP-date forms are ignored."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return max(0.0, seconds)


def decode_json(response) -> Any:
    """JSON body of a 2xx response; an unparseable body is an UNKNOWN failure."""
    try:
        return response.json()
    except ValueError as e:
        raise RemoteCallError(
            ErrorKind.UNKNOWN,
            f"Unreadable response body: {response.text[:RAW_BODY_LIMIT]}",
            status=response.status_code,
            body=response.text,
        ) from e
