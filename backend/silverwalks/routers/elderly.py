from fastapi import APIRouter

from silverwalks.models import ElderlyCreateRequest, ElderlyProfile, NurseAssignmentRequest
from silverwalks.routers.http_errors import raise_walk_http_error
from silverwalks.services.errors import WalkServiceError
from silverwalks.services.walk_store import walk_store

router = APIRouter(prefix="/elderly", tags=["elderly"])


@router.post("", response_model=ElderlyProfile)
def create_elderly(request: ElderlyCreateRequest):
    try:
        return walk_store.add_elderly(
            user_id=request.user_id,
            name=request.name,
            assigned_nurse_id=request.assigned_nurse_id,
        )
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.get("/{elderly_id}", response_model=ElderlyProfile)
def get_elderly(elderly_id: str):
    try:
        return walk_store.get_elderly(elderly_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)


@router.put("/{elderly_id}/assigned-nurse", response_model=ElderlyProfile)
def assign_nurse(elderly_id: str, request: NurseAssignmentRequest):
    try:
        return walk_store.assign_nurse(elderly_id, request.nurse_id)
    except WalkServiceError as exc:
        raise_walk_http_error(exc)
