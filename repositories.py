"""Repository classes the attendance components depend on.

Each repository wraps one aggregate behind a few narrow queries. They share
one SQLAlchemy session, bundled together with it in :class:`Store`; the
components receive a ``Store`` through their constructor and never reach
for the global ``db`` object, so tests can hand them any session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app_logging import get_logger
from db_utils import atomic
from errors import ConflictError
from models import (
    AttendanceRecord,
    AttendanceSession,
    AuditLog,
    ClassEnrollment,
    Schedule,
    SchoolClass,
    User,
)

_logger = get_logger("attendance.audit")


def teacher_lock(teacher_id: Any):
    return select(User.id).where(User.id == teacher_id).with_for_update()


class UserRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, user_id: Any) -> Optional[User]:
        return self._session.get(User, user_id)

    def role(self, user_id: Any) -> Optional[str]:
        user = self.get(user_id)
        return user.role if user is not None and user.is_active else None

    def is_enrolled(self, student_id: Any, class_id: Any) -> bool:
        stmt = select(ClassEnrollment.id).where(
            ClassEnrollment.student_id == student_id,
            ClassEnrollment.class_id == class_id,
            ClassEnrollment.is_active.is_(True),
        )
        return self._session.execute(stmt).first() is not None

    def lock_for_schedule_write(self, teacher_id: Any) -> None:
        """Hold a row lock on the teacher until the transaction ends.

        Concurrent schedule writes for one teacher queue here, so their
        overlap checks run one after the other. SQLite ignores the lock.
        """
        self._session.execute(teacher_lock(teacher_id))


class ClassRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, class_id: Any) -> Optional[SchoolClass]:
        return self._session.get(SchoolClass, class_id)

    def owned_by(self, teacher_id: Any) -> List[int]:
        stmt = select(SchoolClass.id).where(SchoolClass.teacher_id == teacher_id)
        return list(self._session.execute(stmt).scalars())


class ScheduleRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, schedule_id: Any) -> Optional[Schedule]:
        return self._session.get(Schedule, schedule_id)

    def get_active(self, schedule_ids: Iterable[Any]) -> List[Schedule]:
        stmt = select(Schedule).where(Schedule.id.in_(list(schedule_ids)), Schedule.is_active.is_(True))
        return list(self._session.execute(stmt).scalars())

    def add(self, schedule: Schedule) -> Schedule:
        self._session.add(schedule)
        self._session.flush()
        return schedule

    def search(self, teacher_id: Any = None, include_inactive: bool = False) -> List[Schedule]:
        stmt = select(Schedule)
        if teacher_id is not None:
            stmt = stmt.where(Schedule.teacher_id == teacher_id)
        if not include_inactive:
            stmt = stmt.where(Schedule.is_active.is_(True))
        return list(self._session.execute(stmt.order_by(Schedule.start_time, Schedule.id)).scalars())

    def active_for_teacher(self, teacher_id: Any, day_of_week: Optional[str] = None) -> List[Schedule]:
        stmt = select(Schedule).where(Schedule.teacher_id == teacher_id, Schedule.is_active.is_(True))
        if day_of_week is not None:
            stmt = stmt.where(Schedule.day_of_week == day_of_week)
        return list(self._session.execute(stmt.order_by(Schedule.start_time, Schedule.id)).scalars())

    def deactivate(self, schedule_ids: Iterable[Any]) -> int:
        """Deactivate the still-active schedules among ``schedule_ids``.

        Returns the number of rows changed so callers can detect that a
        concurrent request already consumed some of them.
        """

        stmt = (
            update(Schedule)
            .where(Schedule.id.in_(list(schedule_ids)), Schedule.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        return self._session.execute(stmt).rowcount


class SessionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, qr_session: AttendanceSession) -> AttendanceSession:
        self._session.add(qr_session)
        self._session.flush()
        return qr_session

    def get_by_session_id(self, session_id: str) -> Optional[AttendanceSession]:
        stmt = select(AttendanceSession).where(AttendanceSession.session_id == session_id)
        return self._session.execute(stmt).scalar_one_or_none()

    def active_for_teacher(self, teacher_id: Any, now: datetime) -> List[AttendanceSession]:
        stmt = (
            select(AttendanceSession)
            .where(
                AttendanceSession.teacher_id == teacher_id,
                AttendanceSession.is_active.is_(True),
                AttendanceSession.expires_at > now,
            )
            .order_by(AttendanceSession.created_at.desc(), AttendanceSession.id.desc())
        )
        return list(self._session.execute(stmt).scalars())

    def deactivate_all(self, teacher_id: Any, now: datetime) -> int:
        stmt = (
            update(AttendanceSession)
            .where(AttendanceSession.teacher_id == teacher_id, AttendanceSession.is_active.is_(True))
            .values(
                is_active=False,
                expires_at=case((AttendanceSession.expires_at < now, AttendanceSession.expires_at), else_=now),
            )
            .execution_options(synchronize_session="fetch")
        )
        return self._session.execute(stmt).rowcount

    def purge_expired(self, now: datetime) -> int:
        referenced = select(AttendanceRecord.session_id).where(AttendanceRecord.session_id.is_not(None))
        stmt = (
            delete(AttendanceSession)
            .where(AttendanceSession.expires_at <= now, AttendanceSession.id.not_in(referenced))
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount


class AttendanceRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def find(self, session_pk: int, student_id: Any) -> Optional[AttendanceRecord]:
        stmt = select(AttendanceRecord).where(
            AttendanceRecord.session_id == session_pk,
            AttendanceRecord.student_id == student_id,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def find_for_schedule_between(self, student_id: Any, class_id: Any, schedule_id: Any,
                                  start: datetime, end: datetime) -> Optional[AttendanceRecord]:
        stmt = select(AttendanceRecord).where(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.class_id == class_id,
            AttendanceRecord.schedule_id == schedule_id,
            AttendanceRecord.attended_at >= start,
            AttendanceRecord.attended_at < end,
        )
        return self._session.execute(stmt).scalars().first()

    def add(self, record: AttendanceRecord) -> AttendanceRecord:
        self._session.add(record)
        self._session.flush()
        return record

    def search(self, *, class_ids: Optional[Iterable[Any]] = None, student_id: Any = None,
               start: Optional[datetime] = None, end: Optional[datetime] = None,
               status: Optional[str] = None) -> List[AttendanceRecord]:
        stmt = select(AttendanceRecord)
        if class_ids is not None:
            stmt = stmt.where(AttendanceRecord.class_id.in_(list(class_ids)))
        if student_id is not None:
            stmt = stmt.where(AttendanceRecord.student_id == student_id)
        if start is not None:
            stmt = stmt.where(AttendanceRecord.attended_at >= start)
        if end is not None:
            stmt = stmt.where(AttendanceRecord.attended_at <= end)
        if status is not None:
            stmt = stmt.where(AttendanceRecord.status == status)
        stmt = stmt.order_by(AttendanceRecord.attended_at.desc(), AttendanceRecord.id.desc())
        return list(self._session.execute(stmt).scalars())


class AuditLogSink:
    """Fire-and-forget audit trail.

    Entries are written in their own transaction after the audited operation
    committed; a failed write is logged and never reaches the caller.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def record(self, actor_id: Any, action: str, details: Optional[Dict[str, Any]] = None,
               status: str = "success") -> None:
        try:
            with atomic(self._session):
                self._session.add(AuditLog(user_id=actor_id, action=action, details=details or {}, status=status))
        except (SQLAlchemyError, ConflictError):
            _logger.exception("audit write failed", extra={"action": action, "actor_id": actor_id})


class Store:
    """One SQLAlchemy session plus the repositories bound to it."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.users = UserRepository(session)
        self.classes = ClassRepository(session)
        self.schedules = ScheduleRepository(session)
        self.sessions = SessionRepository(session)
        self.attendance = AttendanceRepository(session)
        self.audit = AuditLogSink(session)


__all__ = [
    "AttendanceRepository",
    "AuditLogSink",
    "ClassRepository",
    "ScheduleRepository",
    "SessionRepository",
    "Store",
    "UserRepository",
    "teacher_lock",
]
