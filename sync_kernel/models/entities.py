"""Desired and remote entities: the two sides of a reconciliation run."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ChargeCategory(str, Enum):
    """How a task is billed on the accounting side."""

    TIME = "TIME"
    FIXED = "FIXED"
    NON_CHARGEABLE = "NON_CHARGEABLE"


class DesiredEntity(BaseModel):
    """A task cost we want to exist under a parent (project)."""

    parent_key: str                         # Free-text parent name or code, e.g. "NY25001"
    name: str                               # Task name, matched case-insensitively
    rate_minor_units: int                   # Cents; never a float
    duration_minutes: int = Field(ge=0)
    category: ChargeCategory = ChargeCategory.TIME
    currency: Optional[str] = None          # Falls back to the remote task / tenant default
    idempotency_key: str = ""               # Filled in by the planner for creates


class RemoteParent(BaseModel):
    """A parent record (project) as listed by the accounting API."""

    remote_id: str
    name: str
    code: str                               # Extracted from name unless the API supplies one
    status: str = "INPROGRESS"


class RemoteEntity(BaseModel):
    """A task as it currently exists remotely. Fetched fresh every run."""

    remote_id: str
    parent_remote_id: str
    name: str
    rate_minor_units: int
    duration_minutes: int
    category: ChargeCategory
    currency: Optional[str] = None
    status: Optional[str] = None
