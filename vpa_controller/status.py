"""Helpers that mutate a PodAutoscaler's in-memory status."""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from .recommendations import ResourceRecommendation

CONDITION_READY = "Ready"
REASON_FAILED_CREATE = "FailedCreate"
REASON_NOT_OWNED = "NotOwned"


def _status(pa: Dict[str, Any]) -> Dict[str, Any]:
    status = pa.get("status")
    if status is None:
        status = pa["status"] = {}
    return status


def get_condition(pa: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    """Return the status condition of the given type, if set."""
    for condition in (pa.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    pa: Dict[str, Any],
    condition_type: str,
    status: str,
    reason: str = "",
    message: str = "",
) -> Dict[str, Any]:
    """
    Set a status condition, replacing any existing one of the same type.

    ``lastTransitionTime`` is kept when the condition status did not change.

    Returns:
        The condition as stored
    """
    conditions = _status(pa).setdefault("conditions", [])
    existing = get_condition(pa, condition_type)

    transition_time = datetime.now(timezone.utc).isoformat()
    if existing is not None and existing.get("status") == status:
        transition_time = existing.get("lastTransitionTime", transition_time)

    condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": transition_time,
    }
    if existing is not None:
        conditions[conditions.index(existing)] = condition
    else:
        conditions.append(condition)
    return condition


def mark_resource_failed_creation(pa: Dict[str, Any], kind: str, name: str) -> None:
    """Surface a failed creation of a dependent resource."""
    set_condition(
        pa,
        CONDITION_READY,
        "False",
        reason=REASON_FAILED_CREATE,
        message=f'Failed to create {kind} "{name}".',
    )


def mark_resource_not_owned(pa: Dict[str, Any], kind: str, name: str) -> None:
    """Surface that a dependent resource exists but belongs to someone else."""
    set_condition(
        pa,
        CONDITION_READY,
        "False",
        reason=REASON_NOT_OWNED,
        message=f'There is an existing {kind} "{name}" that we do not own.',
    )


def set_resource_recommendations(
    pa: Dict[str, Any], recommendations: Iterable[ResourceRecommendation]
) -> None:
    # Full replace, never a merge.
    _status(pa)["resourceRecommendations"] = [r.to_dict() for r in recommendations]
