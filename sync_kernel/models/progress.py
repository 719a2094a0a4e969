"""Progress events delivered to a caller-supplied sink."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProgressEventType(str, Enum):
    LOG = "log"
    PROGRESS = "progress"                   # A step transition
    PIPELINE_PROGRESS = "pipeline_progress"  # Per-parent progress during execute
    VALIDATION_PROGRESS = "validation_progress"
    ERROR = "error"
    COMPLETE = "complete"


class ProgressEvent(BaseModel):
    type: ProgressEventType
    session_id: str
    step: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    current: Optional[int] = None
    total: Optional[int] = None
    data: Optional[Any] = None
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
