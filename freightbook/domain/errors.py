"""
Error taxonomy for the booking core.

Every failure surfaced to a caller is a ``BookingError`` subclass carrying a
machine-readable ``kind`` and the HTTP status the API layer renders it with.
``extra`` holds structured details (e.g. required vs. actual minutes).
"""

from __future__ import annotations

from typing import Any


class BookingError(Exception):
    kind = "booking_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationFailed(BookingError):
    kind = "validation_failed"
    status_code = 400


class Unauthenticated(BookingError):
    kind = "unauthenticated"
    status_code = 401


class Forbidden(BookingError):
    kind = "forbidden"
    status_code = 403


class NotFound(BookingError):
    kind = "not_found"
    status_code = 404


class OtpNotFound(NotFound):
    kind = "otp_not_found"


class Conflict(BookingError):
    kind = "conflict"
    status_code = 409


class StateViolation(BookingError):
    kind = "state_violation"
    status_code = 409


class OtpExpired(BookingError):
    kind = "otp_expired"
    status_code = 410


class OtpInvalid(BookingError):
    kind = "otp_invalid"
    status_code = 400

    def __init__(self, message: str, *, too_many_attempts: bool = False, **extra: Any):
        super().__init__(message, **extra)
        self.too_many_attempts = too_many_attempts
        if too_many_attempts:
            self.kind = "otp_attempts_exhausted"


class MilestoneTooSoon(BookingError):
    kind = "milestone_too_soon"
    status_code = 409

    def __init__(self, message: str, *, required_minutes: int, actual_minutes: float):
        super().__init__(
            message,
            required_minutes=required_minutes,
            actual_minutes=actual_minutes,
        )
        self.required_minutes = required_minutes
        self.actual_minutes = actual_minutes


class ConfigurationMissing(BookingError):
    kind = "configuration_missing"
    status_code = 503


class LedgerFailure(BookingError):
    kind = "ledger_failure"
    status_code = 400
