import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from silverwalks.models import (
    AvailabilitySlot,
    AvailabilityStatus,
    ElderlyProfile,
    NurseCertification,
    NurseProfile,
    RecurringSlotInput,
    VerificationStatus,
    WalkFeedback,
    WalkSession,
    WalkSessionStatus,
    WalkStatistics,
    WalkStatusChange,
    WalkTelemetry,
)
from silverwalks.services import walk_lifecycle
from silverwalks.services.availability import (
    availability_matcher,
    parse_clock,
    validate_recurring_slot,
    validate_window,
)
from silverwalks.services.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from silverwalks.services.walk_stats import compute_walk_statistics, period_start

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0
FEEDBACK_SIDES = {"elderly", "nurse"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _busy_timeout_seconds() -> float:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "")
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_BUSY_TIMEOUT_SECONDS
    return value if value > 0 else DEFAULT_BUSY_TIMEOUT_SECONDS


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump())
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_feedback(value: Optional[str]) -> Optional[WalkFeedback]:
    if not value:
        return None
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable feedback payload")
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return WalkFeedback(**payload)
    except PydanticValidationError:
        logger.warning("Ignoring feedback payload with invalid fields")
        return None


def _normalize_specializations(tags: Optional[Iterable[str]]) -> List[str]:
    return sorted({tag.strip() for tag in tags or [] if tag and tag.strip()})


@dataclass
class WalkStore:
    db_path: str
    now_fn: Callable[[], datetime] = _utc_now
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS nurse_profiles (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        rating REAL NOT NULL DEFAULT 0,
                        availability_status TEXT NOT NULL DEFAULT 'available',
                        specializations_json TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS nurse_availability (
                        id TEXT PRIMARY KEY,
                        nurse_id TEXT NOT NULL,
                        is_recurring INTEGER NOT NULL,
                        day_of_week INTEGER,
                        specific_date TEXT,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS nurse_certifications (
                        id TEXT PRIMARY KEY,
                        nurse_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        issuer TEXT NOT NULL,
                        issue_date TEXT NOT NULL,
                        expiry_date TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS elderly_profiles (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        assigned_nurse_id TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS walk_sessions (
                        id TEXT PRIMARY KEY,
                        elderly_id TEXT NOT NULL,
                        nurse_id TEXT NOT NULL,
                        scheduled_date TEXT NOT NULL,
                        scheduled_time TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        status TEXT NOT NULL DEFAULT 'scheduled',
                        actual_start_time TEXT,
                        actual_end_time TEXT,
                        distance_meters INTEGER,
                        steps_count INTEGER,
                        calories_burned INTEGER,
                        points_earned INTEGER,
                        elderly_feedback_json TEXT,
                        nurse_feedback_json TEXT,
                        cancellation_reason TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS walk_status_history (
                        id TEXT PRIMARY KEY,
                        walk_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                self._ensure_column(conn, "nurse_profiles", "total_walks", "INTEGER NOT NULL DEFAULT 0")
                self._ensure_column(conn, "nurse_profiles", "verification_status", "TEXT NOT NULL DEFAULT 'pending'")
                self._ensure_column(conn, "walk_sessions", "reminder_sent", "INTEGER NOT NULL DEFAULT 0")
                self._ensure_column(conn, "walk_sessions", "version", "INTEGER NOT NULL DEFAULT 0")
                conn.execute("CREATE INDEX IF NOT EXISTS walk_sessions_elderly_id ON walk_sessions (elderly_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS walk_sessions_nurse_id ON walk_sessions (nurse_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS walk_sessions_scheduled_date ON walk_sessions (scheduled_date)")
                conn.execute("CREATE INDEX IF NOT EXISTS walk_sessions_status ON walk_sessions (status)")
                conn.execute("CREATE INDEX IF NOT EXISTS nurse_availability_nurse_id ON nurse_availability (nurse_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS nurse_certifications_nurse_id ON nurse_certifications (nurse_id)")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _today(self) -> date:
        return self.now_fn().date()

    # Row mapping

    def _row_to_slot(self, row: sqlite3.Row) -> AvailabilitySlot:
        return AvailabilitySlot(
            id=row["id"],
            nurse_id=row["nurse_id"],
            is_recurring=bool(row["is_recurring"]),
            day_of_week=row["day_of_week"],
            specific_date=date.fromisoformat(row["specific_date"]) if row["specific_date"] else None,
            start_time=row["start_time"],
            end_time=row["end_time"],
        )

    def _row_to_nurse(
        self,
        row: sqlite3.Row,
        slots: List[AvailabilitySlot],
        certifications: List[NurseCertification],
    ) -> NurseProfile:
        return NurseProfile(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            rating=float(row["rating"]),
            availability_status=row["availability_status"],
            verification_status=row["verification_status"],
            specializations=json.loads(row["specializations_json"] or "[]"),
            availability=slots,
            certifications=certifications,
            total_walks=int(row["total_walks"] or 0),
        )

    def _row_to_certification(self, row: sqlite3.Row) -> NurseCertification:
        return NurseCertification(
            id=row["id"],
            nurse_id=row["nurse_id"],
            name=row["name"],
            issuer=row["issuer"],
            issue_date=date.fromisoformat(row["issue_date"]),
            expiry_date=date.fromisoformat(row["expiry_date"]) if row["expiry_date"] else None,
        )

    def _row_to_elderly(self, row: sqlite3.Row) -> ElderlyProfile:
        return ElderlyProfile(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            assigned_nurse_id=row["assigned_nurse_id"],
        )

    def _row_to_walk(self, row: sqlite3.Row) -> WalkSession:
        return WalkSession(
            id=row["id"],
            elderly_id=row["elderly_id"],
            nurse_id=row["nurse_id"],
            scheduled_date=date.fromisoformat(row["scheduled_date"]),
            scheduled_time=row["scheduled_time"],
            duration_minutes=int(row["duration_minutes"]),
            status=row["status"],
            actual_start_time=_parse_datetime(row["actual_start_time"]),
            actual_end_time=_parse_datetime(row["actual_end_time"]),
            distance_meters=row["distance_meters"],
            steps_count=row["steps_count"],
            calories_burned=row["calories_burned"],
            points_earned=row["points_earned"],
            elderly_feedback=_parse_feedback(row["elderly_feedback_json"]),
            nurse_feedback=_parse_feedback(row["nurse_feedback_json"]),
            cancellation_reason=row["cancellation_reason"],
            reminder_sent=bool(row["reminder_sent"]),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    # Loading helpers (run on the caller's connection)

    def _load_nurse(self, conn: sqlite3.Connection, nurse_id: str) -> Optional[NurseProfile]:
        row = conn.execute("SELECT * FROM nurse_profiles WHERE id = ?", (nurse_id,)).fetchone()
        if not row:
            return None
        slot_rows = conn.execute(
            """
            SELECT * FROM nurse_availability
            WHERE nurse_id = ?
            ORDER BY is_recurring DESC, day_of_week, specific_date, start_time
            """,
            (nurse_id,),
        ).fetchall()
        cert_rows = conn.execute(
            "SELECT * FROM nurse_certifications WHERE nurse_id = ? ORDER BY issue_date, name",
            (nurse_id,),
        ).fetchall()
        return self._row_to_nurse(
            row,
            [self._row_to_slot(slot) for slot in slot_rows],
            [self._row_to_certification(cert) for cert in cert_rows],
        )

    def _load_nurses(self, conn: sqlite3.Connection, *, approved_only: bool = False) -> List[NurseProfile]:
        query = "SELECT * FROM nurse_profiles"
        params: Tuple[Any, ...] = ()
        if approved_only:
            query += " WHERE verification_status = ?"
            params = (VerificationStatus.APPROVED.value,)
        rows = conn.execute(query + " ORDER BY rating DESC, name ASC", params).fetchall()
        slots_by_nurse: Dict[str, List[AvailabilitySlot]] = {}
        for slot_row in conn.execute(
            "SELECT * FROM nurse_availability ORDER BY is_recurring DESC, day_of_week, specific_date, start_time"
        ).fetchall():
            slots_by_nurse.setdefault(slot_row["nurse_id"], []).append(self._row_to_slot(slot_row))
        certs_by_nurse: Dict[str, List[NurseCertification]] = {}
        for cert_row in conn.execute("SELECT * FROM nurse_certifications ORDER BY issue_date, name").fetchall():
            certs_by_nurse.setdefault(cert_row["nurse_id"], []).append(self._row_to_certification(cert_row))
        return [
            self._row_to_nurse(row, slots_by_nurse.get(row["id"], []), certs_by_nurse.get(row["id"], []))
            for row in rows
        ]

    def _load_elderly(self, conn: sqlite3.Connection, elderly_id: str) -> Optional[ElderlyProfile]:
        row = conn.execute("SELECT * FROM elderly_profiles WHERE id = ?", (elderly_id,)).fetchone()
        return self._row_to_elderly(row) if row else None

    def _fetch_walk_row(self, conn: sqlite3.Connection, walk_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM walk_sessions WHERE id = ?", (walk_id,)).fetchone()

    def _assert_nurse_exists(self, conn: sqlite3.Connection, nurse_id: str) -> None:
        row = conn.execute("SELECT id FROM nurse_profiles WHERE id = ?", (nurse_id,)).fetchone()
        if not row:
            raise NotFoundError("Nurse not found")

    def _record_status_change(
        self,
        conn: sqlite3.Connection,
        walk_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO walk_status_history (id, walk_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"wsh_{uuid4().hex[:10]}", walk_id, actor_user_id, from_status, to_status, note, at.isoformat()),
        )

    # Nurses and availability

    def add_nurse(
        self,
        *,
        user_id: str,
        name: str,
        specializations: Optional[Iterable[str]] = None,
        availability_status: str = AvailabilityStatus.AVAILABLE.value,
        verification_status: str = VerificationStatus.PENDING.value,
    ) -> NurseProfile:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Nurse name is required")
        status = self._parse_availability_status(availability_status)
        verification = self._parse_verification_status(verification_status)
        nurse_id = f"nrs_{uuid4().hex[:10]}"
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO nurse_profiles (
                    id, user_id, name, rating, availability_status, verification_status, specializations_json, created_at
                )
                VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    nurse_id,
                    user_id,
                    clean_name,
                    status.value,
                    verification.value,
                    json.dumps(_normalize_specializations(specializations)),
                    self.now_fn().isoformat(),
                ),
            )
            conn.commit()
            nurse = self._load_nurse(conn, nurse_id)
        assert nurse is not None
        return nurse

    def get_nurse(self, nurse_id: str) -> NurseProfile:
        with self._connect() as conn:
            nurse = self._load_nurse(conn, nurse_id)
        if not nurse:
            raise NotFoundError("Nurse not found")
        return nurse

    def list_nurses(self, specialization: Optional[str] = None) -> List[NurseProfile]:
        with self._connect() as conn:
            nurses = self._load_nurses(conn)
        if specialization:
            wanted = specialization.strip()
            nurses = [nurse for nurse in nurses if wanted in nurse.specializations]
        return nurses

    def _parse_availability_status(self, value: str) -> AvailabilityStatus:
        try:
            return AvailabilityStatus(value)
        except ValueError as exc:
            allowed = ", ".join(status.value for status in AvailabilityStatus)
            raise ValidationError(f"Invalid availability_status. Allowed: {allowed}") from exc

    def set_nurse_status(self, nurse_id: str, availability_status: str) -> NurseProfile:
        status = self._parse_availability_status(availability_status)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE nurse_profiles SET availability_status = ? WHERE id = ?",
                (status.value, nurse_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Nurse not found")
            conn.commit()
            nurse = self._load_nurse(conn, nurse_id)
        logger.info("Nurse %s availability status set to %s", nurse_id, status.value)
        assert nurse is not None
        return nurse

    def _parse_verification_status(self, value: str) -> VerificationStatus:
        try:
            return VerificationStatus(value)
        except ValueError as exc:
            allowed = ", ".join(status.value for status in VerificationStatus)
            raise ValidationError(f"Invalid verification_status. Allowed: {allowed}") from exc

    def set_verification_status(self, nurse_id: str, verification_status: str) -> NurseProfile:
        verification = self._parse_verification_status(verification_status)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE nurse_profiles SET verification_status = ? WHERE id = ?",
                (verification.value, nurse_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Nurse not found")
            conn.commit()
            nurse = self._load_nurse(conn, nurse_id)
        logger.info("Nurse %s verification status set to %s", nurse_id, verification.value)
        assert nurse is not None
        return nurse

    def update_specializations(self, nurse_id: str, specializations: Iterable[str]) -> NurseProfile:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE nurse_profiles SET specializations_json = ? WHERE id = ?",
                (json.dumps(_normalize_specializations(specializations)), nurse_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Nurse not found")
            conn.commit()
            nurse = self._load_nurse(conn, nurse_id)
        assert nurse is not None
        return nurse

    def replace_recurring_slots(self, nurse_id: str, slots: Iterable[RecurringSlotInput]) -> NurseProfile:
        replacements = list(slots)
        if not replacements:
            raise ValidationError("At least one recurring slot is required")
        for slot in replacements:
            validate_recurring_slot(slot)

        created_at = self.now_fn().isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._assert_nurse_exists(conn, nurse_id)
            conn.execute("DELETE FROM nurse_availability WHERE nurse_id = ? AND is_recurring = 1", (nurse_id,))
            for slot in replacements:
                conn.execute(
                    """
                    INSERT INTO nurse_availability (id, nurse_id, is_recurring, day_of_week, specific_date, start_time, end_time, created_at)
                    VALUES (?, ?, 1, ?, NULL, ?, ?, ?)
                    """,
                    (f"av_{uuid4().hex[:10]}", nurse_id, slot.day_of_week, slot.start_time, slot.end_time, created_at),
                )
            conn.commit()
            nurse = self._load_nurse(conn, nurse_id)
        logger.info("Replaced recurring availability for nurse %s (%d slots)", nurse_id, len(replacements))
        assert nurse is not None
        return nurse

    def add_specific_date_slot(self, nurse_id: str, slot_date: date, start_time: str, end_time: str) -> AvailabilitySlot:
        validate_window(start_time, end_time)
        slot = AvailabilitySlot(
            id=f"av_{uuid4().hex[:10]}",
            nurse_id=nurse_id,
            is_recurring=False,
            specific_date=slot_date,
            start_time=start_time,
            end_time=end_time,
        )
        with self._connect() as conn:
            self._assert_nurse_exists(conn, nurse_id)
            conn.execute(
                """
                INSERT INTO nurse_availability (id, nurse_id, is_recurring, day_of_week, specific_date, start_time, end_time, created_at)
                VALUES (?, ?, 0, NULL, ?, ?, ?, ?)
                """,
                (slot.id, nurse_id, slot_date.isoformat(), start_time, end_time, self.now_fn().isoformat()),
            )
            conn.commit()
        return slot

    def add_certification(
        self,
        nurse_id: str,
        *,
        name: str,
        issuer: str,
        issue_date: date,
        expiry_date: Optional[date] = None,
    ) -> NurseCertification:
        clean_name = name.strip()
        clean_issuer = issuer.strip()
        if not clean_name or not clean_issuer:
            raise ValidationError("Certification name and issuer are required")
        if expiry_date is not None and expiry_date < issue_date:
            raise ValidationError("expiry_date must be on or after issue_date")
        certification = NurseCertification(
            id=f"crt_{uuid4().hex[:10]}",
            nurse_id=nurse_id,
            name=clean_name,
            issuer=clean_issuer,
            issue_date=issue_date,
            expiry_date=expiry_date,
        )
        with self._connect() as conn:
            self._assert_nurse_exists(conn, nurse_id)
            conn.execute(
                """
                INSERT INTO nurse_certifications (id, nurse_id, name, issuer, issue_date, expiry_date, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    certification.id,
                    nurse_id,
                    clean_name,
                    clean_issuer,
                    issue_date.isoformat(),
                    _to_db(expiry_date),
                    self.now_fn().isoformat(),
                ),
            )
            conn.commit()
        return certification

    def remove_certification(self, nurse_id: str, certification_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM nurse_certifications WHERE id = ? AND nurse_id = ?",
                (certification_id, nurse_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Certification not found")
            conn.commit()

    def _is_bookable(
        self,
        nurse: NurseProfile,
        on_date: date,
        at_time: str,
        requester: Optional[ElderlyProfile],
    ) -> bool:
        # Only vetted nurses are offered or booked, whatever their schedule says.
        if nurse.verification_status != VerificationStatus.APPROVED.value:
            return False
        return availability_matcher.is_available(nurse, on_date, at_time, requester)

    def find_available_nurses(
        self,
        on_date: date,
        at_time: str,
        *,
        elderly_id: Optional[str] = None,
        specialization: Optional[str] = None,
    ) -> List[NurseProfile]:
        """Nurses bookable at ``on_date``/``at_time``, best rated first."""
        parse_clock(at_time)
        with self._connect() as conn:
            requester = self._requester_hint(conn, elderly_id)
            nurses = self._load_nurses(conn, approved_only=True)
        if specialization:
            wanted = specialization.strip()
            nurses = [nurse for nurse in nurses if wanted in nurse.specializations]
        return availability_matcher.filter_available(nurses, on_date, at_time, requester)

    def is_nurse_available(
        self,
        nurse_id: str,
        on_date: date,
        at_time: str,
        *,
        elderly_id: Optional[str] = None,
    ) -> bool:
        parse_clock(at_time)
        with self._connect() as conn:
            requester = self._requester_hint(conn, elderly_id)
            nurse = self._load_nurse(conn, nurse_id)
        if not nurse:
            raise NotFoundError("Nurse not found")
        return self._is_bookable(nurse, on_date, at_time, requester)

    def _requester_hint(self, conn: sqlite3.Connection, elderly_id: Optional[str]) -> Optional[ElderlyProfile]:
        if not elderly_id:
            return None
        requester = self._load_elderly(conn, elderly_id)
        if not requester:
            raise NotFoundError("Elderly profile not found")
        return requester

    # Elderly profiles

    def add_elderly(self, *, user_id: str, name: str, assigned_nurse_id: Optional[str] = None) -> ElderlyProfile:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Elderly name is required")
        profile = ElderlyProfile(
            id=f"eld_{uuid4().hex[:10]}",
            user_id=user_id,
            name=clean_name,
            assigned_nurse_id=assigned_nurse_id,
        )
        with self._connect() as conn:
            if assigned_nurse_id:
                self._assert_nurse_exists(conn, assigned_nurse_id)
            conn.execute(
                """
                INSERT INTO elderly_profiles (id, user_id, name, assigned_nurse_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (profile.id, profile.user_id, profile.name, profile.assigned_nurse_id, self.now_fn().isoformat()),
            )
            conn.commit()
        return profile

    def get_elderly(self, elderly_id: str) -> ElderlyProfile:
        with self._connect() as conn:
            profile = self._load_elderly(conn, elderly_id)
        if not profile:
            raise NotFoundError("Elderly profile not found")
        return profile

    def assign_nurse(self, elderly_id: str, nurse_id: Optional[str]) -> ElderlyProfile:
        with self._connect() as conn:
            if nurse_id:
                self._assert_nurse_exists(conn, nurse_id)
            cursor = conn.execute(
                "UPDATE elderly_profiles SET assigned_nurse_id = ? WHERE id = ?",
                (nurse_id, elderly_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Elderly profile not found")
            conn.commit()
            profile = self._load_elderly(conn, elderly_id)
        assert profile is not None
        return profile

    # Walk sessions

    def create_walk(
        self,
        *,
        elderly_id: str,
        nurse_id: str,
        scheduled_date: date,
        scheduled_time: str,
        duration_minutes: int = 30,
        actor_user_id: Optional[str] = None,
    ) -> WalkSession:
        parse_clock(scheduled_time, field="scheduled_time")
        if duration_minutes <= 0:
            raise ValidationError("duration_minutes must be greater than 0")

        now = self.now_fn()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            elderly = self._load_elderly(conn, elderly_id)
            if not elderly:
                raise NotFoundError("Elderly profile not found")
            nurse = self._load_nurse(conn, nurse_id)
            if not nurse:
                raise NotFoundError("Nurse not found")
            if nurse.verification_status != VerificationStatus.APPROVED.value:
                raise ConflictError("Nurse is not verified for bookings")
            if not self._is_bookable(nurse, scheduled_date, scheduled_time, elderly):
                raise ConflictError("Nurse is not available at the requested time")

            active = [status.value for status in walk_lifecycle.ACTIVE_STATUSES]
            clash = conn.execute(
                f"""
                SELECT id FROM walk_sessions
                WHERE nurse_id = ? AND scheduled_date = ? AND scheduled_time = ?
                  AND status IN ({", ".join("?" for _ in active)})
                LIMIT 1
                """,
                (nurse_id, scheduled_date.isoformat(), scheduled_time, *active),
            ).fetchone()
            if clash:
                raise ConflictError("Nurse already has a walk booked at this time")

            walk = WalkSession(
                id=f"walk_{uuid4().hex[:12]}",
                elderly_id=elderly_id,
                nurse_id=nurse_id,
                scheduled_date=scheduled_date,
                scheduled_time=scheduled_time,
                duration_minutes=duration_minutes,
                status=WalkSessionStatus.SCHEDULED,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                """
                INSERT INTO walk_sessions (id, elderly_id, nurse_id, scheduled_date, scheduled_time, duration_minutes, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    walk.id,
                    walk.elderly_id,
                    walk.nurse_id,
                    walk.scheduled_date.isoformat(),
                    walk.scheduled_time,
                    walk.duration_minutes,
                    walk.status.value,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            self._record_status_change(
                conn,
                walk.id,
                actor_user_id or elderly.user_id,
                "none",
                walk.status.value,
                "walk requested",
                now,
            )
            conn.commit()

        logger.info("Walk %s scheduled for elderly %s with nurse %s", walk.id, elderly_id, nurse_id)
        return walk

    def get_walk(self, walk_id: str) -> WalkSession:
        with self._connect() as conn:
            row = self._fetch_walk_row(conn, walk_id)
        if not row:
            raise NotFoundError("Walk not found")
        return self._row_to_walk(row)

    def confirm_walk(self, walk_id: str, *, actor_user_id: str = "system") -> WalkSession:
        return self._transition(walk_id, "confirm", actor_user_id=actor_user_id)

    def reject_walk(self, walk_id: str, *, actor_user_id: str = "system") -> WalkSession:
        return self._transition(walk_id, "reject", actor_user_id=actor_user_id)

    def cancel_walk(self, walk_id: str, reason: str, *, actor_user_id: str = "system") -> WalkSession:
        return self._transition(walk_id, "cancel", actor_user_id=actor_user_id, reason=reason)

    def start_walk(self, walk_id: str, *, actor_user_id: str = "system") -> WalkSession:
        return self._transition(walk_id, "start", actor_user_id=actor_user_id)

    def finish_walk(
        self,
        walk_id: str,
        telemetry: Optional[WalkTelemetry] = None,
        *,
        actor_user_id: str = "system",
    ) -> WalkSession:
        return self._transition(walk_id, "finish", actor_user_id=actor_user_id, telemetry=telemetry)

    def _transition(
        self,
        walk_id: str,
        action: str,
        *,
        actor_user_id: str,
        reason: Optional[str] = None,
        telemetry: Optional[WalkTelemetry] = None,
    ) -> WalkSession:
        now = self.now_fn()
        with self._connect() as conn:
            row = self._fetch_walk_row(conn, walk_id)
            if not row:
                raise NotFoundError("Walk not found")
            walk = self._row_to_walk(row)
            updates = walk_lifecycle.plan_transition(walk, action, now=now, reason=reason, telemetry=telemetry)
            updates["updated_at"] = now

            assignments = ", ".join(f"{column} = ?" for column in updates)
            cursor = conn.execute(
                f"UPDATE walk_sessions SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
                (*[_to_db(value) for value in updates.values()], walk_id, row["version"]),
            )
            if cursor.rowcount != 1:
                raise ConflictError("Walk was changed by another request; reload and retry")

            to_status = updates["status"].value
            self._record_status_change(
                conn,
                walk_id,
                actor_user_id,
                walk.status.value,
                to_status,
                updates.get("cancellation_reason") or action,
                now,
            )
            if action == "finish":
                conn.execute(
                    "UPDATE nurse_profiles SET total_walks = total_walks + 1 WHERE id = ?",
                    (walk.nurse_id,),
                )
            conn.commit()
            updated = self._row_to_walk(self._fetch_walk_row(conn, walk_id))

        logger.info("Walk %s %s by %s: %s -> %s", walk_id, action, actor_user_id, walk.status.value, to_status)
        return updated

    def attach_feedback(self, walk_id: str, side: str, feedback: WalkFeedback) -> WalkSession:
        if side not in FEEDBACK_SIDES:
            raise ValidationError("Invalid feedback side. Allowed: elderly, nurse")
        with self._connect() as conn:
            row = self._fetch_walk_row(conn, walk_id)
            if not row:
                raise NotFoundError("Walk not found")
            walk = self._row_to_walk(row)
            if walk.status != WalkSessionStatus.COMPLETED:
                raise InvalidTransitionError(current_status=walk.status.value, action="feedback")

            cursor = conn.execute(
                f"""
                UPDATE walk_sessions
                SET {side}_feedback_json = ?, updated_at = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (_to_db(feedback), self.now_fn().isoformat(), walk_id, row["version"]),
            )
            if cursor.rowcount != 1:
                raise ConflictError("Walk was changed by another request; reload and retry")
            if side == "elderly":
                self._refresh_nurse_rating(conn, walk.nurse_id)
            conn.commit()
            updated = self._row_to_walk(self._fetch_walk_row(conn, walk_id))
        return updated

    def _refresh_nurse_rating(self, conn: sqlite3.Connection, nurse_id: str) -> None:
        rows = conn.execute(
            """
            SELECT elderly_feedback_json FROM walk_sessions
            WHERE nurse_id = ? AND status = ? AND elderly_feedback_json IS NOT NULL
            """,
            (nurse_id, WalkSessionStatus.COMPLETED.value),
        ).fetchall()
        ratings = []
        for row in rows:
            feedback = _parse_feedback(row["elderly_feedback_json"])
            if feedback is not None and feedback.rating is not None:
                ratings.append(feedback.rating)
        rating = round(min(max(sum(ratings) / len(ratings), 0.0), 5.0), 2) if ratings else 0.0
        conn.execute("UPDATE nurse_profiles SET rating = ? WHERE id = ?", (rating, nurse_id))

    def list_status_history(self, walk_id: str) -> List[WalkStatusChange]:
        with self._connect() as conn:
            if not self._fetch_walk_row(conn, walk_id):
                raise NotFoundError("Walk not found")
            rows = conn.execute(
                "SELECT * FROM walk_status_history WHERE walk_id = ? ORDER BY created_at, rowid",
                (walk_id,),
            ).fetchall()
        return [WalkStatusChange(**dict(row)) for row in rows]

    def _parse_walk_status(self, status: Optional[str]) -> Optional[WalkSessionStatus]:
        if status is None:
            return None
        try:
            return WalkSessionStatus(status)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in WalkSessionStatus)
            raise ValidationError(f"Invalid status value. Allowed: {allowed}") from exc

    def list_walks_for_elderly(
        self,
        elderly_id: str,
        *,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[WalkSession]:
        parsed_status = self._parse_walk_status(status)
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be greater than 0")
        if start_date and end_date and end_date < start_date:
            raise ValidationError("end_date must be on or after start_date")

        query = "SELECT * FROM walk_sessions WHERE elderly_id = ?"
        params: List[Any] = [elderly_id]
        if parsed_status:
            query += " AND status = ?"
            params.append(parsed_status.value)
        if start_date:
            query += " AND scheduled_date >= ?"
            params.append(start_date.isoformat())
        if end_date:
            query += " AND scheduled_date <= ?"
            params.append(end_date.isoformat())
        query += " ORDER BY scheduled_date DESC, scheduled_time DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_walk(row) for row in rows]

    def list_walks_for_nurse(self, nurse_id: str, *, status: Optional[str] = None) -> List[WalkSession]:
        parsed_status = self._parse_walk_status(status)
        query = "SELECT * FROM walk_sessions WHERE nurse_id = ?"
        params: List[Any] = [nurse_id]
        if parsed_status:
            query += " AND status = ?"
            params.append(parsed_status.value)
        query += " ORDER BY scheduled_date DESC, scheduled_time DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_walk(row) for row in rows]

    def today_walk_for_elderly(self, elderly_id: str) -> Optional[WalkSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM walk_sessions
                WHERE elderly_id = ? AND scheduled_date = ?
                ORDER BY scheduled_time ASC
                LIMIT 1
                """,
                (elderly_id, self._today().isoformat()),
            ).fetchone()
        return self._row_to_walk(row) if row else None

    def weekly_walks(self, elderly_id: str, week_start: date, week_end: date) -> List[WalkSession]:
        if week_end < week_start:
            raise ValidationError("week_end must be on or after week_start")
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM walk_sessions
                WHERE elderly_id = ? AND scheduled_date >= ? AND scheduled_date <= ?
                ORDER BY scheduled_date ASC, scheduled_time ASC
                """,
                (elderly_id, week_start.isoformat(), week_end.isoformat()),
            ).fetchall()
        return [self._row_to_walk(row) for row in rows]

    def upcoming_walks(self, profile_id: str, role: str) -> List[WalkSession]:
        column = {"elderly": "elderly_id", "nurse": "nurse_id"}.get(role)
        if column is None:
            raise ValidationError("Invalid role value. Allowed: elderly, nurse")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM walk_sessions
                WHERE {column} = ? AND status = ? AND scheduled_date >= ?
                ORDER BY scheduled_date ASC, scheduled_time ASC
                """,
                (profile_id, WalkSessionStatus.SCHEDULED.value, self._today().isoformat()),
            ).fetchall()
        return [self._row_to_walk(row) for row in rows]

    def walk_statistics(self, elderly_id: str, period: Optional[str] = None) -> WalkStatistics:
        start = period_start(period, self._today())
        query = "SELECT * FROM walk_sessions WHERE elderly_id = ?"
        params: List[Any] = [elderly_id]
        if start:
            query += " AND scheduled_date >= ?"
            params.append(start.isoformat())
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return compute_walk_statistics(self._row_to_walk(row) for row in rows)

    # Reminders

    def walks_due_for_reminder(self, target_date: date) -> List[WalkSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM walk_sessions
                WHERE scheduled_date = ? AND status = ? AND reminder_sent = 0
                ORDER BY scheduled_time ASC
                """,
                (target_date.isoformat(), WalkSessionStatus.CONFIRMED.value),
            ).fetchall()
        return [self._row_to_walk(row) for row in rows]

    def mark_reminder_sent(self, walk_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE walk_sessions SET reminder_sent = 1 WHERE id = ? AND reminder_sent = 0",
                (walk_id,),
            )
            conn.commit()
        return cursor.rowcount == 1

    def walk_participants(self, walk: WalkSession) -> Tuple[str, str]:
        """User ids of the elderly requester and the nurse on ``walk``."""
        with self._connect() as conn:
            elderly = conn.execute("SELECT user_id FROM elderly_profiles WHERE id = ?", (walk.elderly_id,)).fetchone()
            nurse = conn.execute("SELECT user_id FROM nurse_profiles WHERE id = ?", (walk.nurse_id,)).fetchone()
        return (elderly["user_id"] if elderly else "", nurse["user_id"] if nurse else "")


default_db = str(Path(__file__).resolve().parents[2] / "data" / "walks.sqlite3")
walk_store = WalkStore(
    db_path=os.getenv("SILVERWALKS_DB_PATH", default_db),
    busy_timeout=_busy_timeout_seconds(),
)
