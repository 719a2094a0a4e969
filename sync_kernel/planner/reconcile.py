"""
Reconciliation Planner — computes the minimal set of mutations.

Pure: takes the desired entities and one fetched snapshot, returns an
`ActionPlan`. No network, no clock beyond the run timestamp it is given.

Decision rule per desired entity and matched parent:
1. No parent with the same code            -> no_match (benign)
2. Parent found, no task with that name    -> create (with idempotency key)
3. Task found, rate/duration/category differ -> update (skip under create_only)
4. Everything equal                        -> skip

Remote tasks are matched by case-insensitive name. When several remote
tasks share a name, the first one wins and the rest are never touched.
"""

import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sync_kernel.fetcher.state import RemoteSnapshot
from sync_kernel.models.config import PlannerConfig
from sync_kernel.models.entities import DesiredEntity, RemoteEntity, RemoteParent
from sync_kernel.models.plan import (
    ActionPlan,
    ActionPlanItem,
    FetchFailure,
    PlanAction,
    PlanStatistics,
)
from sync_kernel.planner.codes import code_key

logger = logging.getLogger(__name__)

NOT_FOUND_REASON = "parent not found in active remote set"


def make_idempotency_key(tenant_id: str, parent_id: str, entity_name: str, run_timestamp: int) -> str:
    """Deterministic create key: the same inputs always give the same key."""
    material = "|".join([tenant_id, parent_id, entity_name.strip().lower(), str(run_timestamp)])
    return "rk-" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def name_key(name: str) -> str:
    return name.strip().lower()


def _differences(desired: DesiredEntity, remote: RemoteEntity) -> List[str]:
    diffs = []
    if desired.rate_minor_units != remote.rate_minor_units:
        diffs.append(f"rate {remote.rate_minor_units} -> {desired.rate_minor_units}")
    if desired.duration_minutes != remote.duration_minutes:
        diffs.append(f"duration {remote.duration_minutes} -> {desired.duration_minutes}")
    if desired.category != remote.category:
        diffs.append(f"category {remote.category.value} -> {desired.category.value}")
    return diffs


class ReconciliationPlanner:
    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()

    def _index(self, entities: List[RemoteEntity], stats: PlanStatistics) -> Dict[str, RemoteEntity]:
        index: Dict[str, RemoteEntity] = {}
        for entity in entities:
            key = name_key(entity.name)
            if key in index:
                stats.duplicate_remote_names += 1
                logger.warning(
                    "Duplicate remote task name %r under parent %s; keeping %s, ignoring %s",
                    entity.name,
                    entity.parent_remote_id,
                    index[key].remote_id,
                    entity.remote_id,
                )
                continue
            index[key] = entity
        return index

    def _decide(
        self,
        tenant_id: str,
        desired: DesiredEntity,
        parent: RemoteParent,
        remote: Optional[RemoteEntity],
        run_timestamp: int,
    ) -> ActionPlanItem:
        common = dict(
            entity_key=f"{parent.code}/{parent.remote_id}/{desired.name}",
            parent_code=parent.code,
            parent_remote_id=parent.remote_id,
            parent_name=parent.name,
        )
        if remote is None:
            key = make_idempotency_key(tenant_id, parent.remote_id, desired.name, run_timestamp)
            return ActionPlanItem(
                action=PlanAction.CREATE,
                desired=desired.model_copy(update={"idempotency_key": key}),
                idempotency_key=key,
                reason="task missing on parent",
                **common,
            )

        common.update(remote_id=remote.remote_id, remote_current=remote, desired=desired)
        if self.config.create_only:
            return ActionPlanItem(action=PlanAction.SKIP, reason="task already exists", **common)

        diffs = _differences(desired, remote)
        if diffs:
            return ActionPlanItem(action=PlanAction.UPDATE, reason="; ".join(diffs), **common)
        return ActionPlanItem(action=PlanAction.SKIP, reason="up to date", **common)

    def plan(
        self,
        tenant_id: str,
        desired: List[DesiredEntity],
        snapshot: RemoteSnapshot,
        run_timestamp: Optional[int] = None,
    ) -> ActionPlan:
        if run_timestamp is None:
            run_timestamp = int(time.time() * 1000)

        stats = PlanStatistics()
        parents_by_code: Dict[str, List[RemoteParent]] = {}
        for parent in snapshot.parents:
            parents_by_code.setdefault(code_key(parent.code), []).append(parent)

        failures: Dict[str, FetchFailure] = {
            f.parent_remote_id: f.model_copy(deep=True) for f in snapshot.failures
        }
        indexes: Dict[str, Dict[str, RemoteEntity]] = {}
        matched_parents = set()
        items: List[ActionPlanItem] = []

        for entity in desired:
            candidates = parents_by_code.get(code_key(entity.parent_key), [])
            if not candidates:
                items.append(
                    ActionPlanItem(
                        entity_key=f"{entity.parent_key}/-/{entity.name}",
                        action=PlanAction.NO_MATCH,
                        parent_code=entity.parent_key,
                        desired=entity,
                        reason=NOT_FOUND_REASON,
                    )
                )
                continue

            for parent in candidates:
                failure = failures.get(parent.remote_id)
                if failure is not None:
                    failure.entity_names.append(entity.name)
                    continue
                matched_parents.add(parent.remote_id)
                if parent.remote_id not in indexes:
                    indexes[parent.remote_id] = self._index(
                        snapshot.entities_by_parent.get(parent.remote_id, []), stats
                    )
                remote = indexes[parent.remote_id].get(name_key(entity.name))
                items.append(self._decide(tenant_id, entity, parent, remote, run_timestamp))

        for item in items:
            if item.action == PlanAction.CREATE:
                stats.creates += 1
            elif item.action == PlanAction.UPDATE:
                stats.updates += 1
            elif item.action == PlanAction.SKIP:
                stats.skips += 1
            else:
                stats.no_matches += 1
        stats.total_items = len(items)
        stats.parents_matched = len(matched_parents)
        blocked = [f for f in failures.values() if f.entity_names]
        stats.parents_blocked = len(blocked)

        logger.info(
            "Plan for tenant %s: %d create, %d update, %d skip, %d no_match, %d parents blocked",
            tenant_id,
            stats.creates,
            stats.updates,
            stats.skips,
            stats.no_matches,
            stats.parents_blocked,
        )
        return ActionPlan(
            tenant_id=tenant_id,
            run_timestamp=run_timestamp,
            items=items,
            fetch_failures=blocked,
            statistics=stats,
            created_at=datetime.now(timezone.utc),
        )
