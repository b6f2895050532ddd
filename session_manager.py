"""QR attendance session lifecycle.

A session is generated by a teacher for one class (optionally one schedule)
and lives until ``expires_at``, which is fixed at generation. While it is
displayed the teacher's client keeps refreshing it; each refresh signs a new
short-lived rotation token but never moves ``expires_at``. Terminating a
session deactivates it and collapses ``expires_at`` to the current time.

Students present whatever their scanner read. Three encodings are accepted,
tried in this order:

1. a JSON object with a ``sessionId`` field, or with a ``token`` field of the
   form ``QR_<sessionId>`` (the teacher display's payload);
2. the bare reference ``QR_<sessionId>``;
3. the signed rotation token, whose ``sid`` claim names the session.

A JSON object that names no session is rejected outright instead of being
retried as another encoding.
"""

from __future__ import annotations

import calendar
import json
import re
import secrets
from datetime import datetime
from typing import Any, Callable, List, Optional

import jwt

from app_logging import get_logger
from config import AttendanceSettings
from db_utils import atomic
from errors import (
    AuthorizationError,
    ExpiredOrInvalidError,
    FormatError,
    NotFoundError,
    ValidationError,
)
from geo import Coordinates, validate_coordinates
from models import AttendanceSession, utcnow
from repositories import Store
from schedule_engine import as_id

_logger = get_logger(__name__)

SESSION_ID_RE = re.compile(r'^[a-f0-9]{32}$')
LEGACY_PREFIX = 'QR_'


def _epoch(moment: datetime) -> int:
    # Naive datetimes from the clock are read as UTC.
    return calendar.timegm(moment.timetuple())


def check_session_id(session_id: Any) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ValidationError('Session ID must be a 32-character hexadecimal string')
    return session_id


class SessionManager:
    """Issue, rotate, terminate and resolve QR attendance sessions."""

    def __init__(self, store: Store, settings: AttendanceSettings,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Teacher operations
    # ------------------------------------------------------------------

    def generate(self, teacher_id: Any, class_id: Any, coordinates: Coordinates,
                 schedule_id: Any = None) -> AttendanceSession:
        if self._store.users.role(teacher_id) != 'teacher':
            raise AuthorizationError('Only teachers can generate QR sessions')
        origin = validate_coordinates(*coordinates)

        school_class = self._store.classes.get(as_id(class_id, 'class ID'))
        if school_class is None:
            raise NotFoundError('Class not found')

        if schedule_id is not None:
            schedule = self._store.schedules.get(as_id(schedule_id, 'schedule ID'))
            if schedule is None:
                raise NotFoundError('Schedule not found')
            if schedule.class_id != school_class.id:
                raise ValidationError('Invalid scheduleId: schedule belongs to another class')
            if schedule.teacher_id != teacher_id:
                raise AuthorizationError('Not authorized for this schedule')
            if not schedule.is_active:
                raise ValidationError('Schedule is no longer active')
            schedule_id = schedule.id

        now = self._clock()
        expires_at = now + self._settings.session_lifetime
        session_id = secrets.token_hex(16)
        qr_session = AttendanceSession(
            session_id=session_id,
            class_id=school_class.id,
            schedule_id=schedule_id,
            teacher_id=teacher_id,
            token=self._sign(session_id, school_class.id, now, expires_at),
            latitude=origin.latitude,
            longitude=origin.longitude,
            issued_at=now,
            expires_at=expires_at,
            is_active=True,
            created_at=now,
        )
        with atomic(self._store.session, 'Session identifier already in use'):
            self._store.sessions.add(qr_session)

        _logger.info('session_generated', extra={'session_id': session_id, 'class_id': school_class.id,
                                                 'actor_id': teacher_id})
        details = {'classId': school_class.id, 'sessionId': session_id}
        if schedule_id is not None:
            details['scheduleId'] = schedule_id
        self._store.audit.record(teacher_id, 'GENERATE_QR_SESSION', details)
        return qr_session

    def refresh(self, teacher_id: Any, session_id: str) -> AttendanceSession:
        """Sign a new rotation token; ``expires_at`` stays untouched."""
        qr_session = self._store.sessions.get_by_session_id(check_session_id(session_id))
        now = self._clock()
        if qr_session is None or qr_session.teacher_id != teacher_id or not qr_session.is_valid_at(now):
            raise NotFoundError('Active session not found')

        with atomic(self._store.session):
            qr_session.token = self._sign(qr_session.session_id, qr_session.class_id, now, qr_session.expires_at)
            qr_session.issued_at = now

        _logger.info('session_refreshed', extra={'session_id': session_id, 'actor_id': teacher_id})
        self._store.audit.record(teacher_id, 'REFRESH_QR_TOKEN', {'sessionId': session_id})
        return qr_session

    def terminate(self, teacher_id: Any, session_id: str) -> AttendanceSession:
        qr_session = self._store.sessions.get_by_session_id(check_session_id(session_id))
        if qr_session is None or qr_session.teacher_id != teacher_id or not qr_session.is_active:
            raise NotFoundError('Active session not found')

        now = self._clock()
        with atomic(self._store.session):
            qr_session.is_active = False
            qr_session.expires_at = min(qr_session.expires_at, now)

        _logger.info('session_terminated', extra={'session_id': session_id, 'actor_id': teacher_id})
        self._store.audit.record(teacher_id, 'TERMINATE_QR_SESSION', {'sessionId': session_id})
        return qr_session

    def terminate_all(self, teacher_id: Any) -> int:
        with atomic(self._store.session):
            count = self._store.sessions.deactivate_all(teacher_id, self._clock())

        _logger.info('sessions_terminated', extra={'count': count, 'actor_id': teacher_id})
        self._store.audit.record(teacher_id, 'TERMINATE_ALL_QR_SESSIONS', {'sessionsTerminated': count})
        return count

    def active_for(self, teacher_id: Any) -> List[AttendanceSession]:
        return self._store.sessions.active_for_teacher(teacher_id, self._clock())

    def purge_expired(self) -> int:
        """Delete expired sessions nothing refers to any more."""
        with atomic(self._store.session):
            count = self._store.sessions.purge_expired(self._clock())
        _logger.info('sessions_purged', extra={'count': count})
        return count

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    def resolve(self, raw_token: Any) -> str:
        """Return the session id carried by ``raw_token``."""
        if not isinstance(raw_token, str) or not raw_token.strip():
            raise FormatError('Invalid token format')
        text = raw_token.strip()

        session_id = self._from_structured(text)
        if session_id is None:
            if text.startswith(LEGACY_PREFIX):
                session_id = text[len(LEGACY_PREFIX):]
            else:
                session_id = self._from_signed(text)

        if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
            raise FormatError('Invalid token: malformed session ID')
        return session_id

    def get_valid(self, session_id: str) -> AttendanceSession:
        qr_session = self._store.sessions.get_by_session_id(check_session_id(session_id))
        if qr_session is None or not qr_session.is_valid_at(self._clock()):
            raise ExpiredOrInvalidError('Invalid or expired QR session')
        return qr_session

    def validate(self, raw_token: Any, student_id: Any = None) -> AttendanceSession:
        """Resolve ``raw_token`` and return its session if still valid.

        With ``student_id`` the student must also be enrolled in the
        session's class, and the check is written to the audit trail.
        """
        qr_session = self.get_valid(self.resolve(raw_token))
        if student_id is None:
            return qr_session
        if not self._store.users.is_enrolled(student_id, qr_session.class_id):
            raise AuthorizationError('Not enrolled in this class')
        self._store.audit.record(student_id, 'VALIDATE_QR_TOKEN',
                                 {'sessionId': qr_session.session_id, 'classId': qr_session.class_id})
        return qr_session

    def _sign(self, session_id: str, class_id: int, now: datetime, expires_at: datetime) -> str:
        rotation_expiry = min(now + self._settings.rotation_window, expires_at)
        claims = {'sid': session_id, 'cid': class_id, 'iat': _epoch(now), 'exp': _epoch(rotation_expiry)}
        return jwt.encode(claims, self._settings.jwt_secret, algorithm=self._settings.jwt_algorithm)

    @staticmethod
    def _from_structured(text: str) -> Optional[str]:
        try:
            payload = json.loads(text)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get('sessionId'):
            return payload['sessionId']
        token = payload.get('token')
        if isinstance(token, str) and token.startswith(LEGACY_PREFIX):
            return token[len(LEGACY_PREFIX):]
        raise FormatError('Invalid token: missing session ID')

    def _from_signed(self, text: str) -> Optional[str]:
        # Validity comes from the session row; the rotation ``exp`` is not checked.
        try:
            claims = jwt.decode(
                text,
                self._settings.jwt_secret,
                algorithms=[self._settings.jwt_algorithm],
                options={'verify_exp': False, 'verify_iat': False},
            )
        except jwt.InvalidTokenError as exc:
            raise FormatError('Invalid token format') from exc
        return claims.get('sid') or claims.get('sessionId')


__all__ = ['LEGACY_PREFIX', 'SESSION_ID_RE', 'SessionManager', 'check_session_id']
