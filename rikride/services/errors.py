"""
Service Errors
Domain error taxonomy shared by the pool, matching and booking services.
Each error carries a machine-readable kind and the HTTP status it maps to;
the message is shown to the end user as-is.
"""


class ServiceError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "message": self.message}


class NotFoundError(ServiceError):
    kind = "not_found"
    status_code = 404


class UnauthorizedError(ServiceError):
    kind = "unauthorized"
    status_code = 403


class InvalidStateTransitionError(ServiceError):
    kind = "invalid_state_transition"
    status_code = 409


class CapacityExceededError(ServiceError):
    kind = "capacity_exceeded"
    status_code = 409


class DuplicateParticipantError(ServiceError):
    kind = "duplicate_participant"
    status_code = 409


class InputValidationError(ServiceError):
    kind = "validation_error"
    status_code = 422


class ConcurrencyConflictError(ServiceError):
    kind = "conflict"
    status_code = 409


# Pool-specific names


class PoolNotFound(NotFoundError):
    pass


class RiderNotInPool(NotFoundError):
    pass


class PoolNotJoinable(InvalidStateTransitionError):
    pass


class PoolExpired(PoolNotJoinable):
    kind = "expired"
    status_code = 410


class InsufficientSeats(CapacityExceededError):
    pass
