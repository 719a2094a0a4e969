"""
Desired-state ingestion from the timesheet processor's consolidated output.

Input shape, keyed by project code:

    {"NY25001": [{"name": "Manhour",
                  "rate": {"currency": "SGD", "value": 5000},
                  "chargeType": "TIME",
                  "estimateMinutes": 120,
                  "idempotencyKey": "..."}]}

The processor emits rates in cents, so `UnitTag.MINOR` is the default.
Callers feeding hand-written major-unit values ("50.00") pass `UnitTag.MAJOR`;
under `UnitTag.MINOR` such literals are rejected rather than read as cents.
"""

import logging
from typing import Dict, List

from sync_kernel.models.entities import ChargeCategory, DesiredEntity
from sync_kernel.money.units import UnitTag, to_minor_units

logger = logging.getLogger(__name__)


class IngestError(ValueError):
    """The payload cannot be turned into desired entities."""


def _entity(project_code: str, raw: dict, unit: UnitTag, index: int) -> DesiredEntity:
    where = f"{project_code}[{index}]"
    if not isinstance(raw, dict):
        raise IngestError(f"{where}: task entry must be an object")
    name = str(raw.get("name") or "").strip()
    if not name:
        raise IngestError(f"{where}: task name is required")

    rate = raw.get("rate")
    if isinstance(rate, dict):
        value, currency = rate.get("value"), rate.get("currency")
    else:
        value, currency = rate, raw.get("currency")
    if value is None:
        raise IngestError(f"{where} ({name}): rate value is required")

    try:
        category = ChargeCategory(str(raw.get("chargeType") or "TIME").upper())
    except ValueError as e:
        raise IngestError(f"{where} ({name}): unknown charge type {raw.get('chargeType')!r}") from e

    try:
        return DesiredEntity(
            parent_key=project_code,
            name=name,
            rate_minor_units=to_minor_units(value, unit),
            duration_minutes=int(raw.get("estimateMinutes") or 0),
            category=category,
            currency=currency,
            idempotency_key=str(raw.get("idempotencyKey") or ""),
        )
    except ValueError as e:
        raise IngestError(f"{where} ({name}): {e}") from e


def desired_from_consolidated_payload(
    payload: Dict[str, List[dict]],
    unit: UnitTag = UnitTag.MINOR,
) -> List[DesiredEntity]:
    """Flatten the per-project payload into desired entities, in payload order."""
    if not isinstance(payload, dict):
        raise IngestError("Consolidated payload must be an object keyed by project code")

    desired: List[DesiredEntity] = []
    for project_code, tasks in payload.items():
        code = str(project_code).strip()
        if not code:
            raise IngestError("Empty project code in payload")
        if not isinstance(tasks, list):
            raise IngestError(f"{code}: expected a list of tasks")
        for index, raw in enumerate(tasks):
            desired.append(_entity(code, raw, unit, index))

    logger.info("Ingested %d desired tasks across %d projects", len(desired), len(payload))
    return desired
