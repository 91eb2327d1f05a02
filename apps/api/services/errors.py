"""Error taxonomy for the photo enhancement and credit accounting core.

Every error carries an ``ErrorKind`` and the HTTP status it maps to, so the API layer
renders them through a single exception handler and callers catch each kind explicitly.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    INVALID_RESERVATION_STATE = "invalid_reservation_state"
    DISPATCH_UNAVAILABLE = "dispatch_unavailable"


class PhotoServiceError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400
    client_facing: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PhotoServiceError):
    kind = ErrorKind.VALIDATION
    status_code = 422


class InsufficientCreditsError(PhotoServiceError):
    kind = ErrorKind.INSUFFICIENT_CREDITS
    status_code = 402

    def __init__(self, user_id: str, available: int = 0):
        super().__init__(
            f"Insufficient credits. Required: 1, available: {max(int(available), 0)}. "
            "Top up credits to continue."
        )
        self.user_id = user_id
        self.available = available


class ConflictError(PhotoServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class NotFoundError(PhotoServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class TransientFailure(PhotoServiceError):
    """Recoverable provider failure. Never leaves the enhancement invoker."""

    kind = ErrorKind.TRANSIENT_FAILURE
    status_code = 503
    client_facing = False


class PermanentFailure(PhotoServiceError):
    """Unrecoverable provider failure, including exhausted retries."""

    kind = ErrorKind.PERMANENT_FAILURE
    status_code = 502
    client_facing = False

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class InvalidReservationStateError(PhotoServiceError):
    """Ledger-integrity violation such as a double commit or double refund."""

    kind = ErrorKind.INVALID_RESERVATION_STATE
    status_code = 500
    client_facing = False

    def __init__(self, reservation_id: str, state: str | None):
        super().__init__(f"Reservation {reservation_id} is not HELD (state={state or 'missing'}).")
        self.reservation_id = reservation_id
        self.state = state


class DispatchError(PhotoServiceError):
    kind = ErrorKind.DISPATCH_UNAVAILABLE
    status_code = 503
