"""Typed errors raised by the attendance core.

Every error carries the HTTP status the API layer answers with, so the
mapping from failure kind to externally visible code lives in one place.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AttendanceError(Exception):
    """Base class for recoverable domain failures."""

    status_code = 400
    title = 'Bad Request'

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def extra_fields(self) -> Dict[str, Any]:
        """Additional members merged into the problem-details body."""
        return {}


class ValidationError(AttendanceError):
    """Malformed or out-of-range input."""

    status_code = 400
    title = 'Validation Failed'


class FormatError(AttendanceError):
    """A QR token in none of the recognised encodings."""

    status_code = 400
    title = 'Unrecognised Token Format'


class NotFoundError(AttendanceError):
    status_code = 404
    title = 'Not Found'


class AuthorizationError(AttendanceError):
    """Caller lacks the required role, ownership or enrollment."""

    status_code = 403
    title = 'Forbidden'


class ConflictError(AttendanceError):
    """Schedule overlap, duplicate attendance or duplicate session id."""

    status_code = 409
    title = 'Conflict'

    def __init__(self, detail: str, conflicting: Optional[Any] = None) -> None:
        super().__init__(detail)
        self.conflicting = conflicting

    def extra_fields(self) -> Dict[str, Any]:
        if self.conflicting is None:
            return {}
        # Only schedules are attached as conflicting entities.
        return {'conflictingSchedule': self.conflicting.to_dict()}


class ProximityError(AttendanceError):
    """Student is outside the session geofence."""

    status_code = 403
    title = 'Outside Geofence'

    def __init__(self, distance: float, max_distance: float) -> None:
        super().__init__(
            f'Student too far from class location ({distance:.2f} meters, '
            f'limit {max_distance:.0f} meters)'
        )
        self.distance = distance
        self.max_distance = max_distance

    def extra_fields(self) -> Dict[str, Any]:
        return {'distance': round(self.distance, 2), 'maxDistance': self.max_distance}


class ExpiredOrInvalidError(AttendanceError):
    """Session inactive, past its deadline, or rotation token expired."""

    status_code = 404
    title = 'Invalid Or Expired Session'


__all__ = [
    'AttendanceError',
    'AuthorizationError',
    'ConflictError',
    'ExpiredOrInvalidError',
    'FormatError',
    'NotFoundError',
    'ProximityError',
    'ValidationError',
]
