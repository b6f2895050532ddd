"""Attendance submission, offline sync and manual entry.

Every path ends in one :class:`AttendanceRecord`. Scanned records (online
submit and offline sync) are tied to a QR session and pass the enrollment,
class and geofence checks; at most one exists per session and student.
Manual entries are made by a teacher or administrator for a schedule slot
and carry no session.

Offline devices may upload the same scan several times with an increasing
``syncVersion``. An upload whose version is not newer than the stored one is
skipped; a newer one overwrites the stored record in place.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app_logging import get_logger
from config import AttendanceSettings, to_wall_time
from db_utils import atomic
from errors import (
    AttendanceError,
    AuthorizationError,
    ConflictError,
    ExpiredOrInvalidError,
    NotFoundError,
    ProximityError,
    ValidationError,
)
from geo import Coordinates, coordinates_from_payload, distance
from models import ATTENDANCE_STATUSES, AttendanceRecord, AttendanceSession, Schedule, SchoolClass, utcnow
from repositories import Store
from schedule_engine import as_id, parse_time
from session_manager import SessionManager, check_session_id

_logger = get_logger(__name__)

DUPLICATE_SCAN = 'Attendance already submitted for this session'


def parse_timestamp(value: Any, name: str, zone_name: str = 'UTC') -> datetime:
    """Parse an ISO-8601 timestamp into naive wall-clock time."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            moment = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f'{name} must be an ISO-8601 timestamp') from exc
    else:
        raise ValidationError(f'{name} must be an ISO-8601 timestamp')
    return to_wall_time(moment, zone_name)


def _face_embedding(value: Any) -> List[float]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError('faceEmbedding must be a list of numbers')
    embedding = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or not math.isfinite(item):
            raise ValidationError('faceEmbedding must be a list of numbers')
        embedding.append(float(item))
    return embedding


def _schedule_bounds(schedule: Schedule, day: datetime) -> Tuple[datetime, datetime]:
    midnight = datetime.combine(day.date(), time.min)
    return (midnight + timedelta(minutes=parse_time(schedule.start_time)),
            midnight + timedelta(minutes=parse_time(schedule.end_time)))


@dataclass
class AttendanceReport:
    records: List[AttendanceRecord]
    stats: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def of(cls, records: List[AttendanceRecord]) -> 'AttendanceReport':
        stats = {'total': len(records)}
        for status in ATTENDANCE_STATUSES:
            stats[status] = sum(1 for record in records if record.status == status)
        stats['manualEntries'] = sum(1 for record in records if record.manual_entry)
        return cls(records, stats)

    def to_dict(self) -> Dict[str, Any]:
        return {'attendances': [record.to_dict() for record in self.records], 'stats': self.stats}


class AttendanceReconciler:
    """Record attendance from scans, offline uploads and teachers."""

    def __init__(self, store: Store, sessions: SessionManager, settings: AttendanceSettings,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._sessions = sessions
        self._settings = settings
        self._clock = clock

    def submit(self, student_id: Any, session_id: str, class_id: Any, coordinates: Coordinates,
               schedule_id: Any = None, liveness_passed: bool = False,
               face_embedding: Optional[Sequence[float]] = None) -> AttendanceRecord:
        qr_session = self._sessions.get_valid(check_session_id(session_id))
        self._require_student(student_id)
        school_class, schedule = self._check_context(student_id, qr_session, class_id, schedule_id)
        embedding = _face_embedding(face_embedding)
        self._check_proximity(coordinates, qr_session)

        if self._store.attendance.find(qr_session.id, student_id) is not None:
            raise ConflictError(DUPLICATE_SCAN)

        now = self._clock()
        status = self._status_at(schedule, now)
        record = AttendanceRecord(
            student_id=student_id,
            class_id=school_class.id,
            schedule_id=schedule.id if schedule is not None else None,
            session_id=qr_session.id,
            latitude=coordinates.latitude,
            longitude=coordinates.longitude,
            liveness_passed=bool(liveness_passed),
            face_embedding=embedding,
            status=status,
            synced=True,
            attended_at=now,
        )
        with atomic(self._store.session, DUPLICATE_SCAN):
            self._store.attendance.add(record)

        _logger.info('attendance_submitted', extra={
            'session_id': qr_session.session_id, 'attendance_status': status, 'actor_id': student_id})
        self._store.audit.record(student_id, 'SUBMIT_ATTENDANCE', {
            'classId': school_class.id,
            'sessionId': qr_session.session_id,
            'status': status,
            'livenessPassed': bool(liveness_passed),
        })
        return record

    def sync(self, student_id: Any, items: Sequence[Any]) -> Dict[str, Any]:
        """Apply offline uploads in order; one failing item never stops the rest."""
        if not isinstance(items, (list, tuple)):
            raise ValidationError('attendances must be a list')
        self._require_student(student_id)

        details: List[Dict[str, Any]] = []
        for item in items:
            try:
                outcome = self._sync_item(student_id, item)
            except AttendanceError as exc:
                details.append({'status': 'failed', 'error': exc.detail, 'data': item})
            except SQLAlchemyError:
                _logger.exception('sync item failed', extra={'actor_id': student_id})
                details.append({'status': 'failed', 'error': 'Database error', 'data': item})
            else:
                details.append({**outcome, 'data': item})

        summary = {status: sum(1 for entry in details if entry['status'] == status)
                   for status in ('success', 'failed', 'skipped')}
        _logger.info('attendance_synced', extra={**summary, 'actor_id': student_id})
        return {**summary, 'details': details}

    def manual_entry(self, actor_id: Any, student_id: Any, class_id: Any, schedule_id: Any,
                     status: str = 'present', attended_at: Any = None) -> AttendanceRecord:
        if status not in ATTENDANCE_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(ATTENDANCE_STATUSES)}")
        student_id = as_id(student_id, 'student ID')
        school_class = self._store.classes.get(as_id(class_id, 'class ID'))
        schedule = self._store.schedules.get(as_id(schedule_id, 'schedule ID'))
        if school_class is None or schedule is None:
            raise NotFoundError('Schedule or class not found')
        self._require_class_access(actor_id, school_class)
        if not self._store.users.is_enrolled(student_id, school_class.id):
            raise AuthorizationError('Student not enrolled in this class')
        if schedule.class_id != school_class.id:
            raise ValidationError('Schedule does not belong to the specified class')

        moment = self._clock() if attended_at is None else parse_timestamp(
            attended_at, 'attendedAt', self._settings.zone_name)
        start, end = _schedule_bounds(schedule, moment)
        if not start <= moment <= end:
            raise ValidationError('Attendance time outside schedule')

        midnight = datetime.combine(moment.date(), time.min)
        if self._store.attendance.find_for_schedule_between(
                student_id, school_class.id, schedule.id, midnight, midnight + timedelta(days=1)) is not None:
            raise ConflictError('Attendance already exists for this schedule and date')

        record = AttendanceRecord(
            student_id=student_id,
            class_id=school_class.id,
            schedule_id=schedule.id,
            session_id=None,
            liveness_passed=False,
            face_embedding=[],
            status=status,
            synced=True,
            manual_entry=True,
            attended_at=moment,
        )
        with atomic(self._store.session):
            self._store.attendance.add(record)

        _logger.info('attendance_manual_entry', extra={'student_id': student_id, 'attendance_status': status,
                                                       'actor_id': actor_id})
        self._store.audit.record(actor_id, 'MANUAL_ATTENDANCE', {
            'classId': school_class.id,
            'studentId': student_id,
            'status': status,
            'attendedAt': moment.isoformat(),
        })
        return record

    def class_report(self, actor_id: Any, class_id: Any, start: Any = None, end: Any = None,
                     status: Optional[str] = None) -> AttendanceReport:
        school_class = self._store.classes.get(as_id(class_id, 'class ID'))
        if school_class is None:
            raise NotFoundError('Class not found')
        self._require_class_access(actor_id, school_class)
        if status is not None and status not in ATTENDANCE_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(ATTENDANCE_STATUSES)}")
        start, end = self._range(start, end)
        return AttendanceReport.of(self._store.attendance.search(
            class_ids=[school_class.id], start=start, end=end, status=status))

    def all_records(self, actor_id: Any, start: Any = None, end: Any = None,
                    status: Optional[str] = None) -> AttendanceReport:
        """Every record an administrator may see, or those of a teacher's own classes."""
        role = self._store.users.role(actor_id)
        if role not in ('teacher', 'admin'):
            raise AuthorizationError('Only teachers and administrators can view attendance records')
        if status is not None and status not in ATTENDANCE_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(ATTENDANCE_STATUSES)}")
        class_ids = self._store.classes.owned_by(actor_id) if role == 'teacher' else None
        start, end = self._range(start, end)
        return AttendanceReport.of(self._store.attendance.search(
            class_ids=class_ids, start=start, end=end, status=status))

    def student_report(self, actor_id: Any, student_id: Any, start: Any = None, end: Any = None,
                       class_id: Any = None) -> AttendanceReport:
        student_id = as_id(student_id, 'student ID')
        role = self._store.users.role(actor_id)
        if role not in ('teacher', 'admin'):
            raise AuthorizationError('Only teachers and administrators can view attendance records')

        class_ids: Optional[List[int]] = None
        if role == 'teacher':
            class_ids = self._store.classes.owned_by(actor_id)
        if class_id is not None:
            wanted = as_id(class_id, 'class ID')
            class_ids = [wanted] if class_ids is None or wanted in class_ids else []

        start, end = self._range(start, end)
        return AttendanceReport.of(self._store.attendance.search(
            class_ids=class_ids, student_id=student_id, start=start, end=end))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sync_item(self, student_id: Any, item: Any) -> Dict[str, Any]:
        if not isinstance(item, Mapping):
            raise ValidationError('Each attendance must be an object')
        session_id = check_session_id(item.get('sessionId'))
        version = item.get('syncVersion')
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError('Sync version must be a positive integer')
        attended_at = parse_timestamp(item.get('attendedAt'), 'attendedAt', self._settings.zone_name)
        if attended_at > self._clock() + self._settings.sync_clock_skew:
            raise ValidationError('attendedAt lies in the future')

        qr_session = self._store.sessions.get_by_session_id(session_id)
        if qr_session is None:
            raise ExpiredOrInvalidError('Invalid session')
        if attended_at < qr_session.created_at:
            raise ValidationError('attendedAt precedes the session')
        if attended_at >= qr_session.expires_at:
            raise ExpiredOrInvalidError('Attendance recorded after the session expired')

        school_class, schedule = self._check_context(student_id, qr_session, item.get('classId'),
                                                     item.get('scheduleId'))
        coordinates = coordinates_from_payload(item.get('studentCoordinates'), 'studentCoordinates')
        embedding = _face_embedding(item.get('faceEmbedding'))
        self._check_proximity(coordinates, qr_session)

        existing = self._store.attendance.find(qr_session.id, student_id)
        if existing is not None and existing.sync_version >= version:
            return {'status': 'skipped', 'error': 'Newer version exists'}

        status = self._status_at(schedule, attended_at)
        values = {
            'class_id': school_class.id,
            'schedule_id': schedule.id if schedule is not None else None,
            'latitude': coordinates.latitude,
            'longitude': coordinates.longitude,
            'liveness_passed': bool(item.get('livenessPassed', False)),
            'face_embedding': embedding,
            'status': status,
            'sync_version': version,
            'synced': True,
            'attended_at': attended_at,
        }
        with atomic(self._store.session, DUPLICATE_SCAN):
            if existing is None:
                self._store.attendance.add(AttendanceRecord(student_id=student_id, session_id=qr_session.id,
                                                            **values))
            else:
                for name, value in values.items():
                    setattr(existing, name, value)

        self._store.audit.record(student_id, 'SYNC_ATTENDANCE', {
            'classId': school_class.id,
            'sessionId': qr_session.session_id,
            'syncVersion': version,
            'status': status,
        })
        return {'status': 'success'}

    def _require_student(self, student_id: Any) -> None:
        if self._store.users.role(student_id) != 'student':
            raise AuthorizationError('Only students can submit attendance')

    def _require_class_access(self, actor_id: Any, school_class: SchoolClass) -> None:
        role = self._store.users.role(actor_id)
        if role == 'admin':
            return
        if role != 'teacher' or school_class.teacher_id != actor_id:
            raise AuthorizationError('Not authorized for this class')

    def _check_context(self, student_id: Any, qr_session: AttendanceSession, class_id: Any,
                       schedule_id: Any) -> Tuple[SchoolClass, Optional[Schedule]]:
        school_class = self._store.classes.get(as_id(class_id, 'class ID'))
        if school_class is None:
            raise NotFoundError('Class not found')
        if not self._store.users.is_enrolled(student_id, school_class.id):
            raise AuthorizationError('Not enrolled in this class')
        if qr_session.class_id != school_class.id:
            raise ValidationError('Class does not match the QR session')

        schedule = None
        if schedule_id is not None:
            schedule = self._store.schedules.get(as_id(schedule_id, 'schedule ID'))
            if schedule is None:
                raise NotFoundError('Schedule not found')
            if schedule.class_id != school_class.id:
                raise ValidationError('Schedule does not belong to the specified class')
        return school_class, schedule

    def _check_proximity(self, coordinates: Coordinates, qr_session: AttendanceSession) -> None:
        meters = distance(coordinates, Coordinates(qr_session.latitude, qr_session.longitude))
        if meters > self._settings.max_distance_meters:
            raise ProximityError(meters, self._settings.max_distance_meters)

    def _status_at(self, schedule: Optional[Schedule], moment: datetime) -> str:
        if schedule is None:
            return 'present'
        start, _ = _schedule_bounds(schedule, moment)
        return 'late' if moment >= start + self._settings.late_threshold else 'present'

    def _range(self, start: Any, end: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
        zone = self._settings.zone_name
        return (None if start is None else parse_timestamp(start, 'startDate', zone),
                None if end is None else parse_timestamp(end, 'endDate', zone))


__all__ = ['AttendanceReconciler', 'AttendanceReport', 'parse_timestamp']
