from datetime import date as date_type
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from silverwalks.models import (
    AvailabilitySlot,
    CertificationCreateRequest,
    NurseAvailabilityCheck,
    NurseCertification,
    NurseCreateRequest,
    NurseProfile,
    NurseSpecializationsRequest,
    NurseStatusUpdateRequest,
    NurseVerificationRequest,
    RecurringAvailabilityRequest,
    SpecificDateSlotRequest,
    WalkSession,
)
from silverwalks.routers.http_errors import raise_walk_http_error
from silverwalks.services.errors import WalkServiceError
from silverwalks.services.walk_store import walk_store

router = APIRouter(prefix="/nurses", tags=["nurses"])


@router.post("", response_model=NurseProfile)
def create_nurse(request: NurseCreateRequest):
    try:
        return walk_store.add_nurse(
            user_id=request.user_id,
            name=request.name,
            specializations=request.specializations,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("", response_model=list[NurseProfile])
def list_nurses(
    date: Optional[date_type] = Query(default=None),
    time: Optional[str] = Query(default=None),
    elderly_id: Optional[str] = Query(default=None),
    specialization: Optional[str] = Query(default=None),
):
    """Without date/time this lists every nurse; with both it returns only the bookable ones."""
    if (date is None) != (time is None):
        raise HTTPException(status_code=400, detail="date and time must be provided together")
    try:
        if date is None:
            return walk_store.list_nurses(specialization=specialization)
        return walk_store.find_available_nurses(
            date,
            time,
            elderly_id=elderly_id,
            specialization=specialization,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/{nurse_id}", response_model=NurseProfile)
def get_nurse(nurse_id: str):
    try:
        return walk_store.get_nurse(nurse_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/{nurse_id}/availability", response_model=NurseAvailabilityCheck)
def check_nurse_availability(
    nurse_id: str,
    date: date_type = Query(...),
    time: str = Query(...),
    elderly_id: Optional[str] = Query(default=None),
):
    try:
        available = walk_store.is_nurse_available(nurse_id, date, time, elderly_id=elderly_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    return NurseAvailabilityCheck(nurse_id=nurse_id, date=date, time=time, available=available)


@router.put("/{nurse_id}/availability", response_model=NurseProfile)
def replace_recurring_availability(nurse_id: str, request: RecurringAvailabilityRequest):
    try:
        return walk_store.replace_recurring_slots(nurse_id, request.slots)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.post("/{nurse_id}/availability/dates", response_model=AvailabilitySlot)
def add_specific_date_availability(nurse_id: str, request: SpecificDateSlotRequest):
    try:
        return walk_store.add_specific_date_slot(nurse_id, request.date, request.start_time, request.end_time)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.put("/{nurse_id}/status", response_model=NurseProfile)
def update_nurse_status(nurse_id: str, request: NurseStatusUpdateRequest):
    try:
        return walk_store.set_nurse_status(nurse_id, request.availability_status)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.put("/{nurse_id}/specializations", response_model=NurseProfile)
def update_nurse_specializations(nurse_id: str, request: NurseSpecializationsRequest):
    try:
        return walk_store.update_specializations(nurse_id, request.specializations)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.put("/{nurse_id}/verification", response_model=NurseProfile)
def update_nurse_verification(nurse_id: str, request: NurseVerificationRequest):
    """Admin review outcome; only approved nurses are offered to requesters."""
    try:
        return walk_store.set_verification_status(nurse_id, request.verification_status)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.post("/{nurse_id}/certifications", response_model=NurseCertification)
def add_nurse_certification(nurse_id: str, request: CertificationCreateRequest):
    try:
        return walk_store.add_certification(
            nurse_id,
            name=request.name,
            issuer=request.issuer,
            issue_date=request.issue_date,
            expiry_date=request.expiry_date,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.delete("/{nurse_id}/certifications/{certification_id}")
def remove_nurse_certification(nurse_id: str, certification_id: str):
    try:
        walk_store.remove_certification(nurse_id, certification_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
    return {"status": "ok"}


@router.get("/{nurse_id}/walks", response_model=list[WalkSession])
def list_nurse_walks(nurse_id: str, status: Optional[str] = Query(default=None)):
    try:
        walk_store.get_nurse(nurse_id)
        return walk_store.list_walks_for_nurse(nurse_id, status=status)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
