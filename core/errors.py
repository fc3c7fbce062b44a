"""
errors.py — Error taxonomy for RaceTiming.

Every error carries a stable ``kind`` (returned to API clients) and the HTTP
status it maps to. The handlers in server.py turn these into JSON responses.
"""

from __future__ import annotations


class RaceTimingError(Exception):
    """Base class for all domain errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(RaceTimingError):
    kind = "validation_error"
    status_code = 400


class FormatError(ValidationError):
    """Time string does not match MM:SS.cc / HH:MM:SS.cc."""
    kind = "format_error"


class InvalidTimeOfDay(ValidationError):
    kind = "invalid_time_of_day"


class InvalidPenalty(ValidationError):
    kind = "invalid_penalty"


class AuthenticationError(RaceTimingError):
    kind = "authentication_error"
    status_code = 401


class NotFoundError(RaceTimingError):
    kind = "not_found"
    status_code = 404


class NoCategories(NotFoundError):
    """No category exists, so there is no base start time."""
    kind = "no_categories"


class ConflictError(RaceTimingError):
    kind = "conflict"
    status_code = 409


class UpstreamStoreError(RaceTimingError):
    kind = "upstream_store_error"
    status_code = 500


class RecalculationWarning(RaceTimingError):
    """Non-fatal: a ranking pass failed or timed out.

    Never returned as an error response; the triggering write succeeds and
    the message is reported in the response's ``warnings`` list.
    """
    kind = "recalculation_warning"
