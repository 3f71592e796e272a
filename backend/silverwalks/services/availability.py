import re
from datetime import date
from typing import Iterable, List, Optional

from silverwalks.models import (
    AvailabilitySlot,
    AvailabilityStatus,
    ElderlyProfile,
    NurseProfile,
    RecurringSlotInput,
)
from silverwalks.services.errors import ValidationError

_CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_clock(value: str, *, field: str = "time") -> int:
    """Return minutes since midnight for a 24-hour ``HH:MM`` string."""
    match = _CLOCK_PATTERN.match(value or "")
    if not match:
        raise ValidationError(f"Invalid {field}; expected HH:MM (24-hour)")
    return int(match.group(1)) * 60 + int(match.group(2))


def validate_window(start_time: str, end_time: str) -> None:
    start = parse_clock(start_time, field="start_time")
    end = parse_clock(end_time, field="end_time")
    if start >= end:
        raise ValidationError("start_time must be before end_time")


def validate_recurring_slot(slot: RecurringSlotInput) -> None:
    if not 0 <= slot.day_of_week <= 6:
        raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    validate_window(slot.start_time, slot.end_time)


def day_of_week(value: date) -> int:
    # Sunday=0 .. Saturday=6
    return value.isoweekday() % 7


class AvailabilityMatcher:
    """Decides whether a nurse can be booked at a given date and time.

    Two gates run in order. The reservation status gate comes first and
    short-circuits: suspended, offline and unrecognised statuses are never
    bookable, and a reserved nurse is bookable only by the requester whose
    assignment points at that nurse. The slot gate then looks for any
    recurring slot on the same weekday, or any date-specific slot on the same
    date, whose window contains the requested minute (both ends inclusive).
    """

    def is_available(
        self,
        nurse: NurseProfile,
        on_date: date,
        at_time: str,
        requester: Optional[ElderlyProfile] = None,
    ) -> bool:
        status = nurse.availability_status
        if status == AvailabilityStatus.RESERVED.value:
            if requester is None or requester.assigned_nurse_id != nurse.id:
                return False
        elif status != AvailabilityStatus.AVAILABLE.value:
            return False

        if not nurse.availability:
            return False

        minute = parse_clock(at_time)
        weekday = day_of_week(on_date)
        return any(self._slot_matches(slot, on_date, weekday, minute) for slot in nurse.availability)

    def filter_available(
        self,
        nurses: Iterable[NurseProfile],
        on_date: date,
        at_time: str,
        requester: Optional[ElderlyProfile] = None,
    ) -> List[NurseProfile]:
        return [nurse for nurse in nurses if self.is_available(nurse, on_date, at_time, requester)]

    def _slot_matches(self, slot: AvailabilitySlot, on_date: date, weekday: int, minute: int) -> bool:
        if slot.is_recurring:
            if slot.day_of_week != weekday:
                return False
        elif slot.specific_date != on_date:
            return False
        return self._is_within_slot(minute, slot.start_time, slot.end_time)

    def _is_within_slot(self, minute: int, start_time: str, end_time: str) -> bool:
        return parse_clock(start_time) <= minute <= parse_clock(end_time)


availability_matcher = AvailabilityMatcher()
