import logging
import sqlite3
from datetime import date
from typing import Optional

from fastapi import APIRouter, Query

from silverwalks.models import (
    ReminderDispatchRequest,
    ReminderDispatchResult,
    WalkActionRequest,
    WalkCancelRequest,
    WalkCreateRequest,
    WalkFeedback,
    WalkFeedbackRequest,
    WalkFinishRequest,
    WalkSession,
    WalkStatistics,
    WalkStatusChange,
    WalkTelemetry,
)
from silverwalks.routers.http_errors import raise_walk_http_error
from silverwalks.services.errors import WalkServiceError
from silverwalks.services.notification_store import notification_store
from silverwalks.services.walk_store import walk_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/walks", tags=["walks"])


def _notify(template: str, walk: WalkSession, audience: str, actor_user_id: Optional[str] = None, **extra) -> None:
    # audience: "elderly", "nurse", or "other" (whoever did not act)
    try:
        elderly_user_id, nurse_user_id = walk_store.walk_participants(walk)
    except sqlite3.Error:
        logger.exception("Could not resolve recipients for walk %s", walk.id)
        return
    if audience == "elderly":
        recipients = [elderly_user_id]
    elif audience == "nurse":
        recipients = [nurse_user_id]
    else:
        recipients = [uid for uid in (elderly_user_id, nurse_user_id) if uid != actor_user_id]
    payload = {
        "walk_id": walk.id,
        "scheduled_date": walk.scheduled_date.isoformat(),
        "scheduled_time": walk.scheduled_time,
        **extra,
    }
    notification_store.dispatch_event(template, recipients, payload)


@router.post("", response_model=WalkSession)
def create_walk(request: WalkCreateRequest):
    try:
        walk = walk_store.create_walk(
            elderly_id=request.elderly_id,
            nurse_id=request.nurse_id,
            scheduled_date=request.scheduled_date,
            scheduled_time=request.scheduled_time,
            duration_minutes=request.duration_minutes,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify("walk_scheduled", walk, "nurse")
    return walk


@router.get("", response_model=list[WalkSession])
def list_walks(
    elderly_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    limit: Optional[int] = Query(default=None),
):
    try:
        return walk_store.list_walks_for_elderly(
            elderly_id,
            status=status,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/today", response_model=Optional[WalkSession])
def today_walk(elderly_id: str = Query(...)):
    return walk_store.today_walk_for_elderly(elderly_id)


@router.get("/weekly", response_model=list[WalkSession])
def weekly_walks(
    elderly_id: str = Query(...),
    week_start: date = Query(...),
    week_end: date = Query(...),
):
    try:
        return walk_store.weekly_walks(elderly_id, week_start, week_end)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/upcoming", response_model=list[WalkSession])
def upcoming_walks(profile_id: str = Query(...), role: str = Query(default="elderly")):
    try:
        return walk_store.upcoming_walks(profile_id, role)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/statistics", response_model=WalkStatistics)
def walk_statistics(elderly_id: str = Query(...), period: Optional[str] = Query(default=None)):
    try:
        return walk_store.walk_statistics(elderly_id, period)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.post("/reminders", response_model=ReminderDispatchResult)
def dispatch_reminders(request: ReminderDispatchRequest):
    reminded = []
    for walk in walk_store.walks_due_for_reminder(request.date):
        # Another caller may have claimed this walk since the query ran.
        if not walk_store.mark_reminder_sent(walk.id):
            continue
        _notify("walk_reminder", walk, "elderly")
        reminded.append(walk.id)
    logger.info("Sent %d walk reminders for %s", len(reminded), request.date)
    return ReminderDispatchResult(date=request.date, reminded_walk_ids=reminded)


@router.get("/{walk_id}", response_model=WalkSession)
def get_walk(walk_id: str):
    try:
        return walk_store.get_walk(walk_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/{walk_id}/history", response_model=list[WalkStatusChange])
def walk_history(walk_id: str):
    try:
        return walk_store.list_status_history(walk_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.post("/{walk_id}/confirm", response_model=WalkSession)
def confirm_walk(walk_id: str, request: WalkActionRequest):
    try:
        walk = walk_store.confirm_walk(walk_id, actor_user_id=request.actor_user_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify("walk_confirmed", walk, "elderly")
    return walk


@router.post("/{walk_id}/reject", response_model=WalkSession)
def reject_walk(walk_id: str, request: WalkActionRequest):
    try:
        walk = walk_store.reject_walk(walk_id, actor_user_id=request.actor_user_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify("walk_rejected", walk, "elderly")
    return walk


@router.post("/{walk_id}/cancel", response_model=WalkSession)
def cancel_walk(walk_id: str, request: WalkCancelRequest):
    try:
        walk = walk_store.cancel_walk(walk_id, request.reason, actor_user_id=request.actor_user_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify(
        "walk_cancelled",
        walk,
        "other",
        actor_user_id=request.actor_user_id,
        reason=walk.cancellation_reason,
    )
    return walk


@router.post("/{walk_id}/start", response_model=WalkSession)
def start_walk(walk_id: str, request: WalkActionRequest):
    try:
        walk = walk_store.start_walk(walk_id, actor_user_id=request.actor_user_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify("walk_started", walk, "elderly")
    return walk


@router.post("/{walk_id}/finish", response_model=WalkSession)
def finish_walk(walk_id: str, request: WalkFinishRequest):
    telemetry = WalkTelemetry(
        distance_meters=request.distance_meters,
        steps_count=request.steps_count,
        calories_burned=request.calories_burned,
    )
    try:
        walk = walk_store.finish_walk(walk_id, telemetry, actor_user_id=request.actor_user_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    _notify("walk_completed", walk, "elderly", points_earned=walk.points_earned or 0)
    return walk


@router.post("/{walk_id}/feedback", response_model=WalkSession)
def submit_feedback(walk_id: str, request: WalkFeedbackRequest):
    try:
        return walk_store.attach_feedback(
            walk_id,
            request.side,
            WalkFeedback(rating=request.rating, note=request.note),
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
