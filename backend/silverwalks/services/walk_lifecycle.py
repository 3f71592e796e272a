from datetime import datetime
from typing import Any, Dict, List, Optional

from silverwalks.models import WalkSession, WalkSessionStatus, WalkTelemetry
from silverwalks.services.errors import InvalidTransitionError, ValidationError

S = WalkSessionStatus

TRANSITIONS: Dict[str, Dict[WalkSessionStatus, WalkSessionStatus]] = {
    "confirm": {S.SCHEDULED: S.CONFIRMED},
    "reject": {S.SCHEDULED: S.REJECTED},
    "cancel": {S.SCHEDULED: S.CANCELLED, S.CONFIRMED: S.CANCELLED},
    "start": {S.CONFIRMED: S.IN_PROGRESS},
    "finish": {S.IN_PROGRESS: S.COMPLETED},
}

ACTIVE_STATUSES = {S.SCHEDULED, S.CONFIRMED, S.IN_PROGRESS}

CALORIES_PER_STEP = 0.04
BASE_WALK_POINTS = 10
METERS_PER_POINT = 100


def next_status(current: WalkSessionStatus, action: str) -> WalkSessionStatus:
    if action not in TRANSITIONS:
        raise ValidationError(f"Unknown walk action: {action}")
    target = TRANSITIONS[action].get(WalkSessionStatus(current))
    if target is None:
        raise InvalidTransitionError(current_status=WalkSessionStatus(current).value, action=action)
    return target


def allowed_actions(current: WalkSessionStatus) -> List[str]:
    return [action for action, edges in TRANSITIONS.items() if WalkSessionStatus(current) in edges]


def derive_walk_metrics(telemetry: Optional[WalkTelemetry]) -> Dict[str, Optional[int]]:
    metrics: Dict[str, Optional[int]] = {
        "distance_meters": None,
        "steps_count": None,
        "calories_burned": None,
        "points_earned": None,
    }
    if telemetry is None:
        return metrics
    supplied = telemetry.model_dump(exclude_none=True)
    if not supplied:
        return metrics

    metrics["distance_meters"] = telemetry.distance_meters
    metrics["steps_count"] = telemetry.steps_count
    if telemetry.calories_burned is not None:
        metrics["calories_burned"] = telemetry.calories_burned
    elif telemetry.steps_count is not None:
        metrics["calories_burned"] = int(round(telemetry.steps_count * CALORIES_PER_STEP))
    metrics["points_earned"] = BASE_WALK_POINTS + (telemetry.distance_meters or 0) // METERS_PER_POINT
    return metrics


def plan_transition(
    walk: WalkSession,
    action: str,
    *,
    now: datetime,
    reason: Optional[str] = None,
    telemetry: Optional[WalkTelemetry] = None,
) -> Dict[str, Any]:
    """Return the column updates for applying ``action`` to ``walk``.

    Raises before anything is written, so a rejected action leaves the
    stored walk untouched.
    """
    target = next_status(walk.status, action)
    updates: Dict[str, Any] = {"status": target}

    if action == "cancel":
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationError("A cancellation reason is required")
        updates["cancellation_reason"] = cleaned
    elif action == "start":
        updates["actual_start_time"] = now
    elif action == "finish":
        end = now
        if walk.actual_start_time is not None and end < walk.actual_start_time:
            end = walk.actual_start_time
        updates["actual_end_time"] = end
        updates.update(derive_walk_metrics(telemetry))
    return updates
