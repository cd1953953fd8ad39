from typing import Any, Dict, List, Optional


class SchedulingError(ValueError):
    """Base class for user-visible scheduling errors."""


class ValidationError(SchedulingError):
    pass


class InvalidCoordinatesError(ValidationError):
    pass


class InvalidRadiusError(ValidationError):
    pass


class NotFoundError(SchedulingError):
    pass


class AuthorizationError(SchedulingError):
    pass


class SchedulingConflictError(SchedulingError):
    def __init__(self, message: str, conflicts: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.conflicts: List[Dict[str, Any]] = conflicts or []


class AlreadyBookedError(SchedulingConflictError):
    pass


class BookedSlotError(SchedulingConflictError):
    pass


class InvalidTransitionError(SchedulingError):
    def __init__(self, current_status: str, target_status: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Invalid status transition: {current_status} -> {target_status}")
        self.current_status = current_status
        self.target_status = target_status


class StorageUnavailableError(RuntimeError):
    """Raised when the backing database cannot be reached or is locked too long."""
