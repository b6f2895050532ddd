"""Database models for the QR attendance service.

SQLAlchemy is used as the ORM layer. The models include:

* :class:`User` – a teacher, student or administrator.
* :class:`SchoolClass` – a taught class (subject + division) owned by a teacher.
* :class:`ClassEnrollment` – a student's membership of a class.
* :class:`Schedule` – a weekly recurring time block for a class. Schedules are
  soft-deleted through ``is_active`` because attendance refers back to them.
* :class:`AttendanceSession` – a short-lived QR session with a rotating token.
  ``session_id`` is unique so two concurrently generated sessions can never
  share an identifier.
* :class:`AttendanceRecord` – one student's attendance. The unique constraint
  across ``session_id`` and ``student_id`` allows at most one scanned record
  per student and session; manual entries carry a NULL ``session_id`` and are
  therefore exempt.
* :class:`AuditLog` – an append-only trail of mutating operations.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask_sqlalchemy import SQLAlchemy
from flask_sqlalchemy.model import Model


class BaseModel(Model):
    # Columns carry plain type annotations instead of Mapped[].
    __allow_unmapped__ = True


db = SQLAlchemy(model_class=BaseModel)

ROLES = ('teacher', 'student', 'admin')
DAYS_OF_WEEK = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday')
SESSION_TYPES = ('lecture', 'lab', 'tutorial', 'project', 'seminar')
ATTENDANCE_STATUSES = ('present', 'late', 'absent')


def utcnow() -> datetime:
    """Naive UTC timestamp used for bookkeeping columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class User(db.Model):
    """A person known to the system. Only the role matters to the core."""

    __tablename__ = 'user'

    id: int = db.Column(db.Integer, primary_key=True)
    full_name: str = db.Column(db.String(100), nullable=False)
    email: str = db.Column(db.String(120), unique=True, nullable=False)
    role: str = db.Column(db.String(10), nullable=False, default='student')
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'fullName': self.full_name, 'email': self.email, 'role': self.role}

    def __repr__(self) -> str:
        return f"<User {self.id} {self.role}>"


class SchoolClass(db.Model):
    """A taught class; ``teacher_id`` is the owning teacher."""

    __tablename__ = 'school_class'

    id: int = db.Column(db.Integer, primary_key=True)
    class_number: str = db.Column(db.String(20), nullable=False)
    subject_code: str = db.Column(db.String(20), nullable=False)
    subject_name: str = db.Column(db.String(100), nullable=False)
    semester: str = db.Column(db.String(10), nullable=False)
    division: str = db.Column(db.String(10), nullable=False)
    teacher_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    __table_args__ = (db.UniqueConstraint('subject_code', 'semester', 'division',
                                          name='uix_class_subject_division'),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'classNumber': self.class_number,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'semester': self.semester,
            'division': self.division,
            'teacherId': self.teacher_id,
        }

    def __repr__(self) -> str:
        return f"<SchoolClass {self.subject_code} {self.division}>"


class ClassEnrollment(db.Model):
    __tablename__ = 'class_enrollment'

    id: int = db.Column(db.Integer, primary_key=True)
    class_id: int = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    student_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)
    enrolled_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (db.UniqueConstraint('class_id', 'student_id', name='uix_enrollment_class_student'),)


class Schedule(db.Model):
    """A weekly recurring block ``[start_time, end_time)`` on one weekday.

    Times are stored as zero-padded ``HH:MM`` strings. No two active schedules
    of the same teacher on the same day may overlap; the rule is enforced by
    :class:`schedule_engine.ScheduleConflictEngine`, not by the database.
    """

    __tablename__ = 'schedule'

    id: int = db.Column(db.Integer, primary_key=True)
    class_id: int = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False, index=True)
    teacher_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    session_type: str = db.Column(db.String(20), nullable=False)
    day_of_week: str = db.Column(db.String(10), nullable=False)
    start_time: str = db.Column(db.String(5), nullable=False)
    end_time: str = db.Column(db.String(5), nullable=False)
    room_number: str = db.Column(db.String(20), nullable=False)
    semester: str = db.Column(db.String(10), nullable=False)
    academic_year: str = db.Column(db.String(20), nullable=False)
    latitude: Optional[float] = db.Column(db.Float, nullable=True)
    longitude: Optional[float] = db.Column(db.Float, nullable=True)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (db.Index('ix_schedule_teacher_day_start', 'teacher_id', 'day_of_week', 'start_time'),)

    # Attributes a merged or split schedule inherits from its source.
    INHERITED_FIELDS = ('class_id', 'teacher_id', 'session_type', 'day_of_week', 'room_number',
                        'semester', 'academic_year', 'latitude', 'longitude')

    def copy_with(self, **overrides: Any) -> 'Schedule':
        values = {name: getattr(self, name) for name in self.INHERITED_FIELDS}
        values.update(overrides)
        return Schedule(**values)

    def to_dict(self) -> Dict[str, Any]:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = {'latitude': self.latitude, 'longitude': self.longitude}
        return {
            'id': self.id,
            'classId': self.class_id,
            'teacherId': self.teacher_id,
            'sessionType': self.session_type,
            'dayOfWeek': self.day_of_week,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'roomNumber': self.room_number,
            'semester': self.semester,
            'academicYear': self.academic_year,
            'location': location,
            'isActive': self.is_active,
        }

    def __repr__(self) -> str:
        return (f"<Schedule {self.id} teacher={self.teacher_id} {self.day_of_week} "
                f"{self.start_time}-{self.end_time} active={self.is_active}>")


class AttendanceSession(db.Model):
    """A QR attendance session.

    ``expires_at`` is fixed when the session is generated; refreshing only
    replaces ``token`` and ``issued_at``. Terminating collapses ``expires_at``
    to the termination time.
    """

    __tablename__ = 'attendance_session'

    id: int = db.Column(db.Integer, primary_key=True)
    session_id: str = db.Column(db.String(32), unique=True, nullable=False)
    class_id: int = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False, index=True)
    schedule_id: Optional[int] = db.Column(db.Integer, db.ForeignKey('schedule.id'), nullable=True)
    teacher_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    token: str = db.Column(db.String(500), nullable=False)
    latitude: float = db.Column(db.Float, nullable=False)
    longitude: float = db.Column(db.Float, nullable=False)
    issued_at: datetime = db.Column(db.DateTime, nullable=False)
    expires_at: datetime = db.Column(db.DateTime, nullable=False, index=True)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (db.Index('ix_session_teacher_active', 'teacher_id', 'is_active'),)

    def is_valid_at(self, now: datetime) -> bool:
        return bool(self.is_active) and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'classId': self.class_id,
            'scheduleId': self.schedule_id,
            'teacherId': self.teacher_id,
            'coordinates': {'latitude': self.latitude, 'longitude': self.longitude},
            'issuedAt': _iso(self.issued_at),
            'expiredAt': _iso(self.expires_at),
            'isActive': self.is_active,
        }

    def __repr__(self) -> str:
        return f"<AttendanceSession {self.session_id} class={self.class_id} active={self.is_active}>"


class AttendanceRecord(db.Model):
    """One student's attendance for a scanned session or a manual entry."""

    __tablename__ = 'attendance_record'

    id: int = db.Column(db.Integer, primary_key=True)
    student_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id: int = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    schedule_id: Optional[int] = db.Column(db.Integer, db.ForeignKey('schedule.id'), nullable=True)
    session_id: Optional[int] = db.Column(db.Integer, db.ForeignKey('attendance_session.id'), nullable=True)
    latitude: Optional[float] = db.Column(db.Float, nullable=True)
    longitude: Optional[float] = db.Column(db.Float, nullable=True)
    liveness_passed: bool = db.Column(db.Boolean, nullable=False, default=False)
    face_embedding: list = db.Column(db.JSON, nullable=False, default=list)
    status: str = db.Column(db.String(10), nullable=False, default='present')
    sync_version: int = db.Column(db.Integer, nullable=False, default=1)
    synced: bool = db.Column(db.Boolean, nullable=False, default=False)
    manual_entry: bool = db.Column(db.Boolean, nullable=False, default=False)
    attended_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    session = db.relationship('AttendanceSession', lazy='joined')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_id', name='uix_attendance_session_student'),
        db.Index('ix_attendance_student_class_time', 'student_id', 'class_id', 'attended_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        coordinates = None
        if self.latitude is not None and self.longitude is not None:
            coordinates = {'latitude': self.latitude, 'longitude': self.longitude}
        return {
            'id': self.id,
            'studentId': self.student_id,
            'classId': self.class_id,
            'scheduleId': self.schedule_id,
            'sessionId': self.session.session_id if self.session is not None else None,
            'studentCoordinates': coordinates,
            'livenessPassed': self.liveness_passed,
            'status': self.status,
            'syncVersion': self.sync_version,
            'manualEntry': self.manual_entry,
            'attendedAt': _iso(self.attended_at),
        }

    def __repr__(self) -> str:
        return (f"<AttendanceRecord student={self.student_id} session={self.session_id} "
                f"status={self.status} v={self.sync_version}>")


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id: int = db.Column(db.Integer, primary_key=True)
    user_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    action: str = db.Column(db.String(40), nullable=False, index=True)
    details: dict = db.Column(db.JSON, nullable=True)
    status: str = db.Column(db.String(10), nullable=False, default='success')
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} user={self.user_id} {self.status}>"
