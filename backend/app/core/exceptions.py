class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailedError(AppError):
    """Raised when a placement is malformed or out of range."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=400, details=details)


class ResourceNotFoundError(AppError):
    """Raised when a requested resource is not found."""
    def __init__(self, resource_type: str, resource_id, message: str | None = None, status_code: int = 404):
        super().__init__(
            message or f"{resource_type} with id {resource_id} not found",
            status_code=status_code,
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class ReferenceNotFoundError(ResourceNotFoundError):
    """Raised when a subject, teacher, room, program or time slot referenced by a placement does not resolve."""


class UnassignableSlotError(ReferenceNotFoundError):
    """Raised when the resolved time slot is a break."""
    def __init__(self, slot_index: int, label: str):
        super().__init__(
            "TimeSlot",
            slot_index,
            message=f"Time slot {slot_index} ({label}) is a break and cannot be assigned",
            status_code=422,
        )


class ConflictDetectedError(AppError):
    """Raised when a well-formed placement collides with existing active slots."""
    def __init__(self, conflicts: list, *, day_index: int, slot_index: int):
        self.conflicts = conflicts
        super().__init__(
            "Scheduling conflicts detected",
            status_code=409,
            details={
                "day_index": day_index,
                "slot_index": slot_index,
                "conflicts": [conflict.model_dump() for conflict in conflicts],
            },
        )


class DuplicateSlotError(AppError):
    """Raised when the store rejects a write because the cell or resource was booked concurrently."""
    def __init__(self, message: str = "A class is already scheduled for this time slot", details: dict = None):
        super().__init__(message, status_code=409, details=details)


class PartialSpanFailureError(AppError):
    """Raised when a spanned assignment failed after some members were written."""
    def __init__(self, message: str, *, span_id: str, orphaned_slot_ids: list[str]):
        super().__init__(
            message,
            status_code=500,
            details={
                "span_id": span_id,
                "orphaned_slot_ids": orphaned_slot_ids,
                "manual_reconciliation_required": bool(orphaned_slot_ids),
            },
        )


class SlotPersistenceError(AppError):
    """Raised when a routine slot write fails before anything was stored."""
    def __init__(self, message: str = "The routine slot could not be saved", details: dict = None):
        super().__init__(message, status_code=500, details=details)


class QueuePublishError(AppError):
    """Raised by queue publishers when a message cannot be enqueued."""
    def __init__(self, message: str):
        super().__init__(message, status_code=503)
