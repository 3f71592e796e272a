from typing import NoReturn

from fastapi import HTTPException

from silverwalks.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    WalkServiceError,
)
from silverwalks.services.walk_lifecycle import allowed_actions


def raise_walk_http_error(exc: WalkServiceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(
            status_code=409,
            detail={
                "message": str(exc),
                "current_status": exc.current_status,
                "action": exc.action,
                "allowed_actions": allowed_actions(exc.current_status),
            },
        )
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
