"""The action plan the planner hands to the executor."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from sync_kernel.models.entities import DesiredEntity, RemoteEntity


class PlanAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    NO_MATCH = "no_match"


class ActionPlanItem(BaseModel):
    """One decision for one desired entity against one remote parent."""

    entity_key: str                         # "<parent code>/<parent id>/<task name>"
    action: PlanAction
    parent_code: str
    parent_remote_id: Optional[str] = None
    parent_name: Optional[str] = None
    remote_id: Optional[str] = None         # Set for update / skip
    desired: DesiredEntity
    remote_current: Optional[RemoteEntity] = None
    reason: str
    idempotency_key: Optional[str] = None   # Set for create

    @property
    def is_mutation(self) -> bool:
        return self.action in (PlanAction.CREATE, PlanAction.UPDATE)


class FetchFailure(BaseModel):
    """A parent whose children could not be read; nothing is planned for it."""

    parent_remote_id: str
    parent_code: str
    parent_name: str
    error_kind: str
    message: str
    http_status: Optional[int] = None
    entity_names: List[str] = []


class PlanStatistics(BaseModel):
    total_items: int = 0
    creates: int = 0
    updates: int = 0
    skips: int = 0
    no_matches: int = 0
    parents_matched: int = 0
    parents_blocked: int = 0                # Child fetch failed
    duplicate_remote_names: int = 0


class ActionPlan(BaseModel):
    """The full plan for one run, computed from one snapshot."""

    tenant_id: str
    run_timestamp: int                      # Epoch millis, part of every idempotency key
    items: List[ActionPlanItem] = []
    fetch_failures: List[FetchFailure] = []
    statistics: PlanStatistics = PlanStatistics()
    created_at: Optional[datetime] = None

    def items_by_parent(self) -> Dict[str, List[ActionPlanItem]]:
        """Group mutating items by parent, preserving plan order."""
        grouped: Dict[str, List[ActionPlanItem]] = {}
        for item in self.items:
            if item.is_mutation and item.parent_remote_id:
                grouped.setdefault(item.parent_remote_id, []).append(item)
        return grouped
