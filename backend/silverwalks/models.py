from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SUSPENDED = "suspended"
    OFFLINE = "offline"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WalkSessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class AvailabilitySlot(BaseModel):
    id: str
    nurse_id: str
    is_recurring: bool
    day_of_week: Optional[int] = None
    specific_date: Optional[date] = None
    start_time: str
    end_time: str


class NurseCertification(BaseModel):
    id: str
    nurse_id: str
    name: str
    issuer: str
    issue_date: date
    expiry_date: Optional[date] = None


class NurseProfile(BaseModel):
    id: str
    user_id: str
    name: str
    rating: float = 0.0
    # Kept as a plain string so values written by other tools still load;
    # the matcher treats anything it does not recognise as unavailable.
    availability_status: str = AvailabilityStatus.AVAILABLE.value
    verification_status: str = VerificationStatus.PENDING.value
    specializations: list[str] = Field(default_factory=list)
    availability: list[AvailabilitySlot] = Field(default_factory=list)
    certifications: list[NurseCertification] = Field(default_factory=list)
    total_walks: int = 0


class ElderlyProfile(BaseModel):
    id: str
    user_id: str
    name: str
    assigned_nurse_id: Optional[str] = None


class WalkFeedback(BaseModel):
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    note: str = ""


class WalkSession(BaseModel):
    id: str
    elderly_id: str
    nurse_id: str
    scheduled_date: date
    scheduled_time: str
    duration_minutes: int
    status: WalkSessionStatus = WalkSessionStatus.SCHEDULED
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    distance_meters: Optional[int] = None
    steps_count: Optional[int] = None
    calories_burned: Optional[int] = None
    points_earned: Optional[int] = None
    elderly_feedback: Optional[WalkFeedback] = None
    nurse_feedback: Optional[WalkFeedback] = None
    cancellation_reason: Optional[str] = None
    reminder_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WalkStatusChange(BaseModel):
    id: str
    walk_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class WalkStatistics(BaseModel):
    total_walks: int = 0
    total_duration: int = 0
    total_steps: int = 0
    total_distance: int = 0
    avg_duration: int = 0
    avg_steps: int = 0
    avg_distance: float = 0
    avg_rating: float = 0
    completion_rate: float = 0


class NurseCreateRequest(BaseModel):
    user_id: str
    name: str
    specializations: list[str] = Field(default_factory=list)


class NurseStatusUpdateRequest(BaseModel):
    availability_status: str


class NurseSpecializationsRequest(BaseModel):
    specializations: list[str]


class RecurringSlotInput(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str


class RecurringAvailabilityRequest(BaseModel):
    slots: list[RecurringSlotInput] = Field(min_length=1)


class NurseVerificationRequest(BaseModel):
    verification_status: str


class CertificationCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    issuer: str = Field(min_length=1)
    issue_date: date
    expiry_date: Optional[date] = None


class SpecificDateSlotRequest(BaseModel):
    date: date
    start_time: str
    end_time: str


class NurseAvailabilityCheck(BaseModel):
    nurse_id: str
    date: date
    time: str
    available: bool


class ElderlyCreateRequest(BaseModel):
    user_id: str
    name: str
    assigned_nurse_id: Optional[str] = None


class NurseAssignmentRequest(BaseModel):
    nurse_id: Optional[str] = None


class WalkCreateRequest(BaseModel):
    elderly_id: str
    nurse_id: str
    scheduled_date: date
    scheduled_time: str
    duration_minutes: int = Field(default=30, gt=0, le=480)


class WalkActionRequest(BaseModel):
    actor_user_id: str = "system"


class WalkCancelRequest(BaseModel):
    actor_user_id: str = "system"
    reason: str


class WalkTelemetry(BaseModel):
    distance_meters: Optional[int] = Field(default=None, ge=0)
    steps_count: Optional[int] = Field(default=None, ge=0)
    calories_burned: Optional[int] = Field(default=None, ge=0)


class WalkFinishRequest(WalkTelemetry):
    actor_user_id: str = "system"


class WalkFeedbackRequest(BaseModel):
    side: Literal["elderly", "nurse"]
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    note: str = ""


class ReminderDispatchRequest(BaseModel):
    date: date


class ReminderDispatchResult(BaseModel):
    date: date
    reminded_walk_ids: list[str]


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["walk", "system"] = "system"
    template: Optional[str] = None
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"
