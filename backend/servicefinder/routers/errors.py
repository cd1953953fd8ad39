from fastapi import HTTPException

from servicefinder.services.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
    SchedulingError,
    StorageUnavailableError,
)

HANDLED_ERRORS = (SchedulingError, StorageUnavailableError)


def raise_scheduling_http_error(exc: Exception) -> None:
    if isinstance(exc, StorageUnavailableError):
        raise HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, SchedulingConflictError):
        raise HTTPException(status_code=409, detail={"message": str(exc), "conflicts": exc.conflicts})
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(
            status_code=409,
            detail={
                "message": str(exc),
                "current_status": exc.current_status,
                "target_status": exc.target_status,
            },
        )
    raise HTTPException(status_code=400, detail=str(exc))
