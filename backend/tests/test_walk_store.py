import os
import sqlite3
import sys
import threading
from datetime import date, datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from silverwalks.models import RecurringSlotInput, WalkFeedback, WalkSessionStatus, WalkTelemetry
from silverwalks.services import walk_lifecycle
from silverwalks.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WalkServiceError,
)
from silverwalks.services.walk_store import WalkStore

TUESDAY = date(2024, 1, 2)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now = self.now + timedelta(minutes=minutes)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path, clock):
    return WalkStore(db_path=str(tmp_path / "walks.sqlite3"), now_fn=clock)


@pytest.fixture
def nurse(store):
    created = store.add_nurse(user_id="user_nurse", name="Nora", specializations=["dementia", " mobility ", "dementia"])
    store.set_verification_status(created.id, "approved")
    return store.replace_recurring_slots(
        created.id,
        [RecurringSlotInput(day_of_week=2, start_time="09:00", end_time="12:00")],
    )


@pytest.fixture
def elderly(store):
    return store.add_elderly(user_id="user_elderly", name="Edith")


def _book(store, elderly, nurse, at="10:00", on=TUESDAY):
    return store.create_walk(
        elderly_id=elderly.id,
        nurse_id=nurse.id,
        scheduled_date=on,
        scheduled_time=at,
    )


def test_specializations_are_trimmed_deduplicated_and_sorted(store, nurse):
    assert nurse.specializations == ["dementia", "mobility"]
    updated = store.update_specializations(nurse.id, ["walking", "  ", "Walking", "walking"])
    assert updated.specializations == ["Walking", "walking"]


def test_replace_recurring_slots_keeps_specific_date_slots(store, nurse):
    store.add_specific_date_slot(nurse.id, date(2024, 1, 6), "14:00", "15:00")
    updated = store.replace_recurring_slots(
        nurse.id,
        [
            RecurringSlotInput(day_of_week=1, start_time="08:00", end_time="10:00"),
            RecurringSlotInput(day_of_week=4, start_time="13:00", end_time="17:00"),
        ],
    )
    recurring = [s for s in updated.availability if s.is_recurring]
    specific = [s for s in updated.availability if not s.is_recurring]
    assert sorted(s.day_of_week for s in recurring) == [1, 4]
    assert len(specific) == 1
    assert specific[0].specific_date == date(2024, 1, 6)


def test_invalid_slot_input_leaves_existing_slots_intact(store, nurse):
    with pytest.raises(ValidationError):
        store.replace_recurring_slots(
            nurse.id,
            [
                RecurringSlotInput(day_of_week=1, start_time="08:00", end_time="10:00"),
                RecurringSlotInput(day_of_week=3, start_time="11:00", end_time="10:00"),
            ],
        )
    reloaded = store.get_nurse(nurse.id)
    assert [(s.day_of_week, s.start_time, s.end_time) for s in reloaded.availability] == [(2, "09:00", "12:00")]


def test_replace_slots_for_unknown_nurse_is_not_found(store):
    with pytest.raises(NotFoundError):
        store.replace_recurring_slots(
            "nrs_missing",
            [RecurringSlotInput(day_of_week=1, start_time="08:00", end_time="10:00")],
        )


def test_empty_slot_replacement_is_rejected_and_keeps_schedule(store, nurse):
    with pytest.raises(ValidationError):
        store.replace_recurring_slots(nurse.id, [])
    reloaded = store.get_nurse(nurse.id)
    assert [(s.day_of_week, s.start_time, s.end_time) for s in reloaded.availability] == [(2, "09:00", "12:00")]


def test_new_nurses_start_pending(store):
    created = store.add_nurse(user_id="user_new", name="Nell")
    assert created.verification_status == "pending"
    assert created.certifications == []


def test_unverified_nurse_is_never_offered_or_booked(store, nurse, elderly):
    store.set_verification_status(nurse.id, "pending")
    assert store.find_available_nurses(TUESDAY, "10:00") == []
    assert store.is_nurse_available(nurse.id, TUESDAY, "10:00") is False
    with pytest.raises(ConflictError):
        _book(store, elderly, nurse)

    store.set_verification_status(nurse.id, "rejected")
    assert store.find_available_nurses(TUESDAY, "10:00") == []
    assert [n.id for n in store.list_nurses()] == [nurse.id]

    store.set_verification_status(nurse.id, "approved")
    assert [n.id for n in store.find_available_nurses(TUESDAY, "10:00")] == [nurse.id]
    assert _book(store, elderly, nurse).status == WalkSessionStatus.SCHEDULED


def test_set_verification_status_validates_input(store, nurse):
    with pytest.raises(ValidationError):
        store.set_verification_status(nurse.id, "vetted")
    with pytest.raises(NotFoundError):
        store.set_verification_status("nrs_missing", "approved")
    assert store.get_nurse(nurse.id).verification_status == "approved"


def test_certifications_are_listed_on_the_profile(store, nurse):
    cpr = store.add_certification(
        nurse.id,
        name=" First Aid & CPR ",
        issuer="Red Cross",
        issue_date=date(2023, 5, 1),
        expiry_date=date(2025, 5, 1),
    )
    dementia = store.add_certification(nurse.id, name="Dementia Care", issuer="NHS", issue_date=date(2021, 3, 9))
    assert cpr.id.startswith("crt_")
    assert cpr.name == "First Aid & CPR"

    profile = store.get_nurse(nurse.id)
    assert [c.id for c in profile.certifications] == [dementia.id, cpr.id]
    assert profile.certifications[0].expiry_date is None
    assert profile.certifications[1].expiry_date == date(2025, 5, 1)

    store.remove_certification(nurse.id, dementia.id)
    assert [c.id for c in store.get_nurse(nurse.id).certifications] == [cpr.id]
    with pytest.raises(NotFoundError):
        store.remove_certification(nurse.id, dementia.id)


def test_certification_input_is_validated(store, nurse):
    with pytest.raises(ValidationError):
        store.add_certification(
            nurse.id,
            name="CPR",
            issuer="Red Cross",
            issue_date=date(2024, 1, 1),
            expiry_date=date(2023, 12, 31),
        )
    with pytest.raises(ValidationError):
        store.add_certification(nurse.id, name="  ", issuer="Red Cross", issue_date=date(2024, 1, 1))
    with pytest.raises(NotFoundError):
        store.add_certification("nrs_missing", name="CPR", issuer="Red Cross", issue_date=date(2024, 1, 1))
    assert store.get_nurse(nurse.id).certifications == []


def test_certification_cannot_be_removed_through_another_nurse(store, nurse):
    other = store.add_nurse(user_id="user_other", name="Otto")
    cert = store.add_certification(nurse.id, name="CPR", issuer="Red Cross", issue_date=date(2024, 1, 1))
    with pytest.raises(NotFoundError):
        store.remove_certification(other.id, cert.id)
    assert len(store.get_nurse(nurse.id).certifications) == 1


def test_set_nurse_status_rejects_unknown_values(store, nurse):
    with pytest.raises(ValidationError):
        store.set_nurse_status(nurse.id, "on_holiday")
    assert store.set_nurse_status(nurse.id, "offline").availability_status == "offline"


def test_unknown_status_written_elsewhere_is_treated_as_unavailable(store, nurse):
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE nurse_profiles SET availability_status = 'on_holiday' WHERE id = ?", (nurse.id,))
        conn.commit()
    assert store.is_nurse_available(nurse.id, TUESDAY, "10:00") is False


def test_find_available_nurses_ranks_by_rating_and_filters(store, nurse):
    other = store.add_nurse(user_id="user_other", name="Otto", specializations=["mobility"])
    store.set_verification_status(other.id, "approved")
    store.replace_recurring_slots(other.id, [RecurringSlotInput(day_of_week=2, start_time="08:00", end_time="18:00")])
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE nurse_profiles SET rating = 4.8 WHERE id = ?", (other.id,))
        conn.commit()

    ranked = store.find_available_nurses(TUESDAY, "10:00")
    assert [n.id for n in ranked] == [other.id, nurse.id]

    later = store.find_available_nurses(TUESDAY, "15:00")
    assert [n.id for n in later] == [other.id]

    dementia = store.find_available_nurses(TUESDAY, "10:00", specialization="dementia")
    assert [n.id for n in dementia] == [nurse.id]


def test_reserved_nurse_is_visible_to_assigned_elderly_only(store, nurse, elderly):
    store.set_nurse_status(nurse.id, "reserved")
    stranger = store.add_elderly(user_id="user_stranger", name="Stan")
    store.assign_nurse(elderly.id, nurse.id)

    assert store.is_nurse_available(nurse.id, TUESDAY, "10:00", elderly_id=elderly.id) is True
    assert store.is_nurse_available(nurse.id, TUESDAY, "10:00", elderly_id=stranger.id) is False
    assert store.find_available_nurses(TUESDAY, "10:00") == []

    walk = _book(store, elderly, nurse)
    assert walk.status == WalkSessionStatus.SCHEDULED
    with pytest.raises(ConflictError):
        _book(store, stranger, nurse, at="11:00")


def test_create_walk_requires_known_profiles(store, nurse, elderly):
    with pytest.raises(NotFoundError):
        store.create_walk(elderly_id="eld_missing", nurse_id=nurse.id, scheduled_date=TUESDAY, scheduled_time="10:00")
    with pytest.raises(NotFoundError):
        store.create_walk(elderly_id=elderly.id, nurse_id="nrs_missing", scheduled_date=TUESDAY, scheduled_time="10:00")


def test_create_walk_outside_availability_conflicts(store, nurse, elderly):
    with pytest.raises(ConflictError):
        _book(store, elderly, nurse, at="12:01")
    with pytest.raises(ValidationError):
        _book(store, elderly, nurse, at="10am")


def test_double_booking_same_slot_conflicts_until_cancelled(store, nurse, elderly):
    first = _book(store, elderly, nurse)
    with pytest.raises(ConflictError):
        _book(store, elderly, nurse)

    store.cancel_walk(first.id, "changed plans", actor_user_id="user_elderly")
    second = _book(store, elderly, nurse)
    assert second.id != first.id


def test_full_walk_lifecycle_records_history_and_metrics(store, clock, nurse, elderly):
    walk = _book(store, elderly, nurse)
    store.confirm_walk(walk.id, actor_user_id="user_nurse")
    clock.advance(120)
    started = store.start_walk(walk.id, actor_user_id="user_nurse")
    assert started.actual_start_time == clock.now
    clock.advance(35)
    finished = store.finish_walk(
        walk.id,
        WalkTelemetry(distance_meters=1500, steps_count=2200),
        actor_user_id="user_nurse",
    )

    assert finished.status == WalkSessionStatus.COMPLETED
    assert finished.actual_end_time - finished.actual_start_time == timedelta(minutes=35)
    assert finished.calories_burned == 88
    assert finished.points_earned == 25
    assert store.get_nurse(nurse.id).total_walks == 1

    history = store.list_status_history(walk.id)
    assert [(h.from_status, h.to_status) for h in history] == [
        ("none", "scheduled"),
        ("scheduled", "confirmed"),
        ("confirmed", "in_progress"),
        ("in_progress", "completed"),
    ]
    assert history[0].actor_user_id == "user_elderly"


def test_illegal_transition_leaves_walk_untouched(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    with pytest.raises(InvalidTransitionError) as exc_info:
        store.start_walk(walk.id)
    assert exc_info.value.current_status == "scheduled"
    assert exc_info.value.action == "start"

    reloaded = store.get_walk(walk.id)
    assert reloaded.status == WalkSessionStatus.SCHEDULED
    assert reloaded.actual_start_time is None
    assert len(store.list_status_history(walk.id)) == 1


def test_cancel_without_reason_is_rejected(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    with pytest.raises(ValidationError):
        store.cancel_walk(walk.id, "  ")
    assert store.get_walk(walk.id).status == WalkSessionStatus.SCHEDULED


def test_transition_on_unknown_walk_is_not_found(store):
    with pytest.raises(NotFoundError):
        store.confirm_walk("walk_missing")


def test_lost_race_raises_conflict_and_writes_one_history_row(store, nurse, elderly, monkeypatch):
    walk = _book(store, elderly, nurse)
    real_plan = walk_lifecycle.plan_transition
    raced = {"done": False}

    def plan_then_lose_race(current, action, **kwargs):
        updates = real_plan(current, action, **kwargs)
        if not raced["done"]:
            raced["done"] = True
            store.cancel_walk(walk.id, "nurse unwell", actor_user_id="user_nurse")
        return updates

    monkeypatch.setattr(walk_lifecycle, "plan_transition", plan_then_lose_race)

    with pytest.raises(ConflictError):
        store.cancel_walk(walk.id, "elderly unwell", actor_user_id="user_elderly")

    reloaded = store.get_walk(walk.id)
    assert reloaded.status == WalkSessionStatus.CANCELLED
    assert reloaded.cancellation_reason == "nurse unwell"
    history = store.list_status_history(walk.id)
    assert [h.to_status for h in history] == ["scheduled", "cancelled"]


def test_concurrent_cancels_commit_exactly_once(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    barrier = threading.Barrier(2)
    outcomes = []

    def cancel(actor):
        barrier.wait()
        try:
            store.cancel_walk(walk.id, f"cancelled by {actor}", actor_user_id=actor)
            outcomes.append("ok")
        except WalkServiceError as exc:
            outcomes.append(type(exc))

    threads = [threading.Thread(target=cancel, args=(actor,)) for actor in ("user_elderly", "user_nurse")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    loser = [o for o in outcomes if o != "ok"][0]
    assert loser in (ConflictError, InvalidTransitionError)
    assert len(store.list_status_history(walk.id)) == 2


def test_feedback_only_after_completion_and_updates_rating(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    with pytest.raises(InvalidTransitionError):
        store.attach_feedback(walk.id, "elderly", WalkFeedback(rating=5))

    store.confirm_walk(walk.id)
    store.start_walk(walk.id)
    store.finish_walk(walk.id)
    store.attach_feedback(walk.id, "elderly", WalkFeedback(rating=4, note="lovely"))

    second = _book(store, elderly, nurse, at="11:00")
    store.confirm_walk(second.id)
    store.start_walk(second.id)
    store.finish_walk(second.id)
    store.attach_feedback(second.id, "elderly", WalkFeedback(rating=4.5))
    updated = store.attach_feedback(second.id, "nurse", WalkFeedback(rating=1, note="tired"))

    assert updated.elderly_feedback.rating == 4.5
    assert updated.nurse_feedback.note == "tired"
    assert store.get_nurse(nurse.id).rating == 4.25


def test_withdrawn_rating_resets_nurse_rating(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    store.confirm_walk(walk.id)
    store.start_walk(walk.id)
    store.finish_walk(walk.id)
    store.attach_feedback(walk.id, "elderly", WalkFeedback(rating=4))
    assert store.get_nurse(nurse.id).rating == 4.0

    store.attach_feedback(walk.id, "elderly", WalkFeedback(note="changed my mind"))
    assert store.get_nurse(nurse.id).rating == 0.0


def test_feedback_side_must_be_known(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    with pytest.raises(ValidationError):
        store.attach_feedback(walk.id, "family", WalkFeedback(rating=3))


def test_walk_queries(store, clock, nurse, elderly):
    store.replace_recurring_slots(
        nurse.id,
        [RecurringSlotInput(day_of_week=day, start_time="08:00", end_time="18:00") for day in range(7)],
    )
    today_late = _book(store, elderly, nurse, at="15:00")
    today_early = _book(store, elderly, nurse, at="09:00")
    tomorrow = _book(store, elderly, nurse, at="10:00", on=TUESDAY + timedelta(days=1))
    next_week = _book(store, elderly, nurse, at="10:00", on=TUESDAY + timedelta(days=8))
    yesterday = _book(store, elderly, nurse, at="10:00", on=TUESDAY - timedelta(days=1))
    store.confirm_walk(tomorrow.id)

    listed = store.list_walks_for_elderly(elderly.id)
    assert [w.id for w in listed] == [next_week.id, tomorrow.id, today_late.id, today_early.id, yesterday.id]
    assert [w.id for w in store.list_walks_for_elderly(elderly.id, limit=2)] == [next_week.id, tomorrow.id]
    assert [w.id for w in store.list_walks_for_elderly(elderly.id, status="confirmed")] == [tomorrow.id]
    in_range = store.list_walks_for_elderly(elderly.id, start_date=TUESDAY, end_date=TUESDAY)
    assert [w.id for w in in_range] == [today_late.id, today_early.id]

    assert store.today_walk_for_elderly(elderly.id).id == today_early.id

    week = store.weekly_walks(elderly.id, TUESDAY - timedelta(days=1), TUESDAY + timedelta(days=5))
    assert [w.id for w in week] == [yesterday.id, today_early.id, today_late.id, tomorrow.id]

    upcoming = store.upcoming_walks(elderly.id, "elderly")
    assert [w.id for w in upcoming] == [today_early.id, today_late.id, next_week.id]
    assert [w.id for w in store.upcoming_walks(nurse.id, "nurse")] == [w.id for w in upcoming]

    assert len(store.list_walks_for_nurse(nurse.id)) == 5

    with pytest.raises(ValidationError):
        store.list_walks_for_elderly(elderly.id, status="lost")
    with pytest.raises(ValidationError):
        store.upcoming_walks(elderly.id, "family")
    with pytest.raises(ValidationError):
        store.weekly_walks(elderly.id, TUESDAY, TUESDAY - timedelta(days=1))


def test_walk_statistics_respects_period(store, clock, nurse, elderly):
    store.replace_recurring_slots(
        nurse.id,
        [RecurringSlotInput(day_of_week=day, start_time="08:00", end_time="18:00") for day in range(7)],
    )
    last_year = _book(store, elderly, nurse, on=date(2023, 12, 20))
    this_month = _book(store, elderly, nurse, on=date(2024, 1, 1))
    _book(store, elderly, nurse, on=date(2024, 1, 5))
    for walk in (last_year, this_month):
        store.confirm_walk(walk.id)
        store.start_walk(walk.id)
        clock.advance(30)
        store.finish_walk(walk.id, WalkTelemetry(distance_meters=1000, steps_count=1500))

    month = store.walk_statistics(elderly.id, "month")
    assert month.total_walks == 1
    assert month.completion_rate == 50.0
    assert month.total_duration == 30

    all_time = store.walk_statistics(elderly.id)
    assert all_time.total_walks == 2
    assert all_time.total_steps == 3000

    with pytest.raises(ValidationError):
        store.walk_statistics(elderly.id, "decade")


def test_reminders_are_claimed_once(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    _book(store, elderly, nurse, at="11:00")
    store.confirm_walk(walk.id)

    due = store.walks_due_for_reminder(TUESDAY)
    assert [w.id for w in due] == [walk.id]
    assert store.mark_reminder_sent(walk.id) is True
    assert store.mark_reminder_sent(walk.id) is False
    assert store.walks_due_for_reminder(TUESDAY) == []
    assert store.get_walk(walk.id).reminder_sent is True


def test_walk_participants_resolves_user_ids(store, nurse, elderly):
    walk = _book(store, elderly, nurse)
    assert store.walk_participants(walk) == ("user_elderly", "user_nurse")


def test_existing_database_gains_new_columns(tmp_path):
    db_path = tmp_path / "legacy.sqlite3"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE walk_sessions (
                id TEXT PRIMARY KEY, elderly_id TEXT NOT NULL, nurse_id TEXT NOT NULL,
                scheduled_date TEXT NOT NULL, scheduled_time TEXT NOT NULL,
                duration_minutes INTEGER NOT NULL, status TEXT NOT NULL DEFAULT 'scheduled',
                actual_start_time TEXT, actual_end_time TEXT, distance_meters INTEGER,
                steps_count INTEGER, calories_burned INTEGER, points_earned INTEGER,
                elderly_feedback_json TEXT, nurse_feedback_json TEXT, cancellation_reason TEXT,
                created_at TEXT NOT NULL, updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()

    WalkStore(db_path=str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(walk_sessions)").fetchall()}
    assert {"reminder_sent", "version"} <= columns
