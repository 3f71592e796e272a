from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from silverwalks.models import WalkSession, WalkSessionStatus, WalkStatistics
from silverwalks.services.errors import ValidationError


def period_start(period: Optional[str], today: date) -> Optional[date]:
    if period is None or period == "all-time":
        return None
    if period == "month":
        return today.replace(day=1)
    if period == "year":
        return today.replace(month=1, day=1)
    raise ValidationError("Invalid period value. Allowed: month, year, all-time")


def _round_half_up(value: float, places: int = 0) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)


def walk_duration_minutes(walk: WalkSession) -> float:
    # Walks logged before telemetry capture only have the planned duration.
    if walk.actual_start_time is not None and walk.actual_end_time is not None:
        return (walk.actual_end_time - walk.actual_start_time).total_seconds() / 60
    return float(walk.duration_minutes or 0)


def compute_walk_statistics(walks: Iterable[WalkSession]) -> WalkStatistics:
    """Summarise a requester's walks within an already-filtered period.

    Aggregates only count completed walks; the completion rate compares them
    with every walk in the period regardless of status. Walks without a
    nurse rating are left out of the rating average entirely.
    """
    all_walks: List[WalkSession] = list(walks)
    completed = [w for w in all_walks if w.status == WalkSessionStatus.COMPLETED]
    total_walks = len(completed)
    if total_walks == 0:
        return WalkStatistics()

    total_duration = sum(walk_duration_minutes(w) for w in completed)
    total_steps = sum(w.steps_count or 0 for w in completed)
    total_distance = sum(w.distance_meters or 0 for w in completed)

    ratings = [
        w.nurse_feedback.rating
        for w in completed
        if w.nurse_feedback is not None and w.nurse_feedback.rating is not None
    ]
    avg_rating = sum(ratings) / len(ratings) if ratings else 0
    completion_rate = total_walks / len(all_walks) * 100

    return WalkStatistics(
        total_walks=total_walks,
        total_duration=int(_round_half_up(total_duration)),
        total_steps=int(_round_half_up(total_steps)),
        total_distance=int(_round_half_up(total_distance)),
        avg_duration=int(_round_half_up(total_duration / total_walks)),
        avg_steps=int(_round_half_up(total_steps / total_walks)),
        avg_distance=float(_round_half_up(total_distance / total_walks, 2)),
        avg_rating=float(_round_half_up(avg_rating, 1)),
        completion_rate=float(_round_half_up(completion_rate, 1)),
    )
