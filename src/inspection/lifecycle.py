from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from inspection.data_models import Inspection, InspectionStatus
from inspection.errors import InvalidTransition


_ALLOWED: dict[InspectionStatus, frozenset[InspectionStatus]] = {
    "pending": frozenset({"submitted", "flagged", "completed"}),
    "submitted": frozenset({"flagged", "completed"}),
    "flagged": frozenset({"completed"}),
    "completed": frozenset(),
}


def can_transition(current: InspectionStatus, target: InspectionStatus) -> bool:
    return current == target or target in _ALLOWED[current]


def transition(inspection: Inspection, target: InspectionStatus, at: datetime) -> Inspection:
    """Return a copy of ``inspection`` moved to ``target``.

    Moving to the current status is a no-op and returns the record unchanged.
    """
    if inspection.status == target:
        return inspection
    if target not in _ALLOWED[inspection.status]:
        raise InvalidTransition(f"cannot move inspection from {inspection.status} to {target}")
    changes: dict = {"status": target, "updated_at": at}
    if target == "completed":
        changes["completed_at"] = at
    return replace(inspection, **changes)


def on_upload_accepted(inspection: Inspection, at: datetime) -> Inspection:
    if inspection.status == "pending":
        return transition(inspection, "submitted", at)
    return inspection


def on_assessment(inspection: Inspection, auto_flag: bool, at: datetime) -> Inspection:
    if auto_flag and inspection.status in ("pending", "submitted"):
        return transition(inspection, "flagged", at)
    return inspection
