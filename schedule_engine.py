"""Weekly schedule management with conflict detection.

A schedule is a half-open block ``[start, end)`` on one weekday. Two blocks
overlap when ``a.start < b.end and b.start < a.end``, so back-to-back blocks
such as 09:00-10:00 and 10:00-11:00 do not collide. The engine keeps the
active schedules of every teacher free of overlaps across create, update,
merge and split. Schedules are never physically removed: delete, merge and
split deactivate their sources, and an inactive schedule stays inactive.

Merge and split deactivate their inputs with a conditional update inside
the same transaction that inserts the results. When a concurrent request
has already deactivated one of the inputs the update touches fewer rows
than expected and the whole transaction is rolled back. Create, update and
merge first lock the teacher row, so concurrent overlap checks for the same
teacher are serialised.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from app_logging import get_logger
from db_utils import atomic
from errors import AttendanceError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from geo import validate_coordinates
from models import DAYS_OF_WEEK, SESSION_TYPES, Schedule, utcnow
from repositories import Store

_logger = get_logger(__name__)

_TIME_RE = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')

_REQUIRED_TEXT = ('room_number', 'semester', 'academic_year')
EDITABLE_FIELDS = ('class_id', 'teacher_id', 'session_type', 'day_of_week', 'start_time', 'end_time',
                   'room_number', 'semester', 'academic_year', 'latitude', 'longitude')


def parse_time(value: Any, name: str = 'time') -> int:
    """Minutes since midnight for an ``HH:mm`` string."""
    if not isinstance(value, str):
        raise ValidationError(f'{name} must be in HH:mm format')
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValidationError(f'{name} must be in HH:mm format')
    return int(match.group(1)) * 60 + int(match.group(2))


def format_time(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def as_id(value: Any, name: str = 'id') -> int:
    """Coerce a JSON identifier to ``int``."""
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {name}')
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f'Invalid {name}')


class ScheduleConflictEngine:
    """Create, update, merge and split schedules without overlaps."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def check_conflict(self, teacher_id: Any, day_of_week: str, start_time: str, end_time: str,
                       exclude_ids: Iterable[int] = ()) -> Optional[Schedule]:
        """Return the first active schedule overlapping the candidate block."""
        if day_of_week not in DAYS_OF_WEEK:
            raise ValidationError('Invalid day of week')
        start = parse_time(start_time, 'startTime')
        end = parse_time(end_time, 'endTime')
        if start >= end:
            raise ValidationError('startTime must be before endTime')
        excluded = set(exclude_ids)
        for existing in self._store.schedules.active_for_teacher(teacher_id, day_of_week):
            if existing.id in excluded:
                continue
            if overlaps(parse_time(existing.start_time), parse_time(existing.end_time), start, end):
                return existing
        return None

    def get(self, actor_id: Any, schedule_id: Any) -> Schedule:
        schedule = self._store.schedules.get(as_id(schedule_id, 'schedule id'))
        if schedule is None:
            raise NotFoundError('Schedule not found')
        if self._store.users.role(actor_id) != 'admin' and schedule.teacher_id != actor_id:
            raise AuthorizationError('Not authorized to access this schedule')
        return schedule

    def search(self, actor_id: Any, teacher_id: Any = None, include_inactive: bool = False) -> List[Schedule]:
        """Schedules ordered by weekday and start time.

        Administrators see every teacher's schedules, or one teacher's with
        ``teacher_id``. Teachers only ever see their own.
        """
        role = self._store.users.role(actor_id)
        if role == 'teacher':
            if teacher_id is not None and as_id(teacher_id, 'teacher ID') != actor_id:
                raise AuthorizationError('Teacher ID must match authenticated user')
            teacher_id = actor_id
        elif role == 'admin':
            teacher_id = None if teacher_id is None else as_id(teacher_id, 'teacher ID')
        else:
            raise AuthorizationError('Only teachers and administrators can view schedules')
        schedules = self._store.schedules.search(teacher_id, include_inactive)
        return sorted(schedules, key=lambda s: (DAYS_OF_WEEK.index(s.day_of_week), s.start_time, s.id))

    def weekly(self, teacher_id: Any) -> Dict[str, List[Schedule]]:
        week: Dict[str, List[Schedule]] = OrderedDict()
        schedules = self._store.schedules.active_for_teacher(teacher_id)
        for day in DAYS_OF_WEEK:
            todays = [s for s in schedules if s.day_of_week == day]
            if todays:
                week[day] = todays
        return week

    def for_day(self, teacher_id: Any, day_of_week: Optional[str] = None) -> List[Schedule]:
        day = day_of_week or self._clock().strftime('%A')
        if day not in DAYS_OF_WEEK:
            return []
        return self._store.schedules.active_for_teacher(teacher_id, day)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, actor_id: Any, data: Mapping[str, Any]) -> Schedule:
        values = self._validated(data)
        self._authorize(actor_id, values['teacher_id'])
        self._require_references(values)

        with atomic(self._store.session, 'Schedule conflict detected'):
            self._lock_teachers(values['teacher_id'])
            self._raise_on_conflict(values)
            schedule = self._store.schedules.add(Schedule(**values))

        _logger.info('schedule_created', extra={'schedule_id': schedule.id, 'actor_id': actor_id})
        self._store.audit.record(actor_id, 'CREATE_SCHEDULE',
                                 {'classId': schedule.class_id, 'scheduleId': schedule.id})
        return schedule

    def create_many(self, actor_id: Any, items: Sequence[Mapping[str, Any]]
                    ) -> Tuple[List[Schedule], List[Dict[str, Any]]]:
        """Create each item independently; failures are collected, not raised."""
        created: List[Schedule] = []
        errors: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            try:
                created.append(self.create(actor_id, item))
            except AttendanceError as exc:
                errors.append({'index': index, 'error': exc.detail, **exc.extra_fields()})
        return created, errors

    def update(self, actor_id: Any, schedule_id: Any, patch: Mapping[str, Any]) -> Schedule:
        schedule = self._store.schedules.get(as_id(schedule_id, 'schedule id'))
        if schedule is None:
            raise NotFoundError('Schedule not found')
        if not schedule.is_active:
            raise ValidationError('Inactive schedules cannot be modified')
        if 'is_active' in patch:
            raise ValidationError('isActive cannot be changed through update; delete the schedule instead')
        self._authorize(actor_id, schedule.teacher_id)

        merged = {name: getattr(schedule, name) for name in EDITABLE_FIELDS}
        merged.update(patch)
        values = self._validated(merged)
        if values['teacher_id'] != schedule.teacher_id:
            self._authorize(actor_id, values['teacher_id'])
        self._require_references(values)

        with atomic(self._store.session, 'Schedule conflict detected'):
            self._lock_teachers(schedule.teacher_id, values['teacher_id'])
            self._raise_on_conflict(values, exclude_ids=(schedule.id,))
            for name, value in values.items():
                setattr(schedule, name, value)

        _logger.info('schedule_updated', extra={'schedule_id': schedule.id, 'actor_id': actor_id})
        self._store.audit.record(actor_id, 'UPDATE_SCHEDULE', {'scheduleId': schedule.id})
        return schedule

    def delete(self, actor_id: Any, schedule_id: Any) -> Schedule:
        """Soft-delete; the row stays for the attendance that refers to it."""
        schedule = self._store.schedules.get(as_id(schedule_id, 'schedule id'))
        if schedule is None:
            raise NotFoundError('Schedule not found')
        self._authorize(actor_id, schedule.teacher_id)
        if not schedule.is_active:
            return schedule

        with atomic(self._store.session):
            schedule.is_active = False

        _logger.info('schedule_deleted', extra={'schedule_id': schedule.id, 'actor_id': actor_id})
        self._store.audit.record(actor_id, 'DELETE_SCHEDULE', {'scheduleId': schedule.id})
        return schedule

    def merge(self, actor_id: Any, schedule_ids: Sequence[Any]) -> Schedule:
        """Replace two or more schedules by one spanning all of them.

        Inputs must share class, teacher, day and room. Contiguity is not
        required: the merged block runs from the earliest start to the latest
        end and any gap between the inputs is absorbed. The merged block must
        still not overlap another active schedule of the teacher.
        """
        if not isinstance(schedule_ids, (list, tuple)):
            raise ValidationError('scheduleIds must be a list')
        ids = list(OrderedDict.fromkeys(as_id(value, 'schedule id') for value in schedule_ids))
        if len(ids) < 2:
            raise ValidationError('At least two distinct schedule IDs are required')

        found = {schedule.id: schedule for schedule in self._store.schedules.get_active(ids)}
        if len(found) != len(ids):
            raise NotFoundError('One or more schedules not found')
        schedules = [found[schedule_id] for schedule_id in ids]
        first = schedules[0]

        def merge_key(s: Schedule) -> tuple:
            return s.class_id, s.teacher_id, s.day_of_week, s.room_number

        if any(merge_key(s) != merge_key(first) for s in schedules[1:]):
            raise ValidationError('Schedules cannot be merged: class, teacher, day and room must match')
        self._authorize(actor_id, first.teacher_id)

        start = format_time(min(parse_time(s.start_time) for s in schedules))
        end = format_time(max(parse_time(s.end_time) for s in schedules))

        with atomic(self._store.session, 'Schedule conflict detected'):
            self._lock_teachers(first.teacher_id)
            conflict = self.check_conflict(first.teacher_id, first.day_of_week, start, end, exclude_ids=ids)
            if conflict is not None:
                _logger.info('schedule_conflict', extra={'conflicting_id': conflict.id, 'actor_id': actor_id})
                raise ConflictError('Merged schedule would overlap another schedule', conflict)
            if self._store.schedules.deactivate(ids) != len(ids):
                raise ConflictError('Schedules were modified by a concurrent request')
            merged = self._store.schedules.add(first.copy_with(start_time=start, end_time=end))

        _logger.info('schedules_merged', extra={'schedule_id': merged.id, 'source_ids': ids, 'actor_id': actor_id})
        self._store.audit.record(actor_id, 'MERGE_SCHEDULES',
                                 {'mergedScheduleId': merged.id, 'originalScheduleIds': ids})
        return merged

    def split(self, actor_id: Any, schedule_id: Any, split_points: Sequence[str]) -> List[Schedule]:
        """Cut a schedule at each point; k points yield k + 1 schedules."""
        original = self._store.schedules.get(as_id(schedule_id, 'schedule id'))
        if original is None or not original.is_active:
            raise NotFoundError('Schedule not found')
        self._authorize(actor_id, original.teacher_id)
        if not isinstance(split_points, (list, tuple)) or not split_points:
            raise ValidationError('At least one split point is required')

        bounds: List[Tuple[int, int]] = []
        cursor = parse_time(original.start_time)
        for raw in [*split_points, original.end_time]:
            point = parse_time(raw, 'split point')
            if point <= cursor:
                raise ValidationError(f'Invalid split point {raw}: must be after {format_time(cursor)} '
                                      f'and before {original.end_time}')
            bounds.append((cursor, point))
            cursor = point

        with atomic(self._store.session, 'Schedule conflict detected'):
            if self._store.schedules.deactivate([original.id]) != 1:
                raise ConflictError('Schedule was modified by a concurrent request')
            pieces = [
                self._store.schedules.add(original.copy_with(start_time=format_time(lo), end_time=format_time(hi)))
                for lo, hi in bounds
            ]

        new_ids = [piece.id for piece in pieces]
        _logger.info('schedule_split', extra={'schedule_id': original.id, 'new_ids': new_ids,
                                              'actor_id': actor_id})
        self._store.audit.record(actor_id, 'SPLIT_SCHEDULE',
                                 {'originalScheduleId': original.id, 'newScheduleIds': new_ids})
        return pieces

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize(self, actor_id: Any, teacher_id: Any) -> None:
        role = self._store.users.role(actor_id)
        if role == 'admin':
            return
        if role != 'teacher' or actor_id != teacher_id:
            raise AuthorizationError('Teacher ID must match authenticated user')

    def _lock_teachers(self, *teacher_ids: int) -> None:
        # Sorted, so writers locking two teachers cannot deadlock.
        for teacher_id in sorted(set(teacher_ids)):
            self._store.users.lock_for_schedule_write(teacher_id)

    def _require_references(self, values: Mapping[str, Any]) -> None:
        if self._store.users.role(values['teacher_id']) != 'teacher':
            raise ValidationError('Invalid teacher ID or user is not a teacher')
        if self._store.classes.get(values['class_id']) is None:
            raise NotFoundError('Class not found')

    def _raise_on_conflict(self, values: Mapping[str, Any], exclude_ids: Iterable[int] = ()) -> None:
        conflict = self.check_conflict(values['teacher_id'], values['day_of_week'],
                                       values['start_time'], values['end_time'], exclude_ids)
        if conflict is not None:
            _logger.info('schedule_conflict', extra={'conflicting_id': conflict.id})
            raise ConflictError('Schedule conflict detected', conflict)

    @staticmethod
    def _validated(data: Mapping[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            'class_id': as_id(data.get('class_id'), 'class ID'),
            'teacher_id': as_id(data.get('teacher_id'), 'teacher ID'),
        }
        session_type = data.get('session_type')
        if session_type not in SESSION_TYPES:
            raise ValidationError(f"Session type must be one of {', '.join(SESSION_TYPES)}")
        values['session_type'] = session_type
        day = data.get('day_of_week')
        if day not in DAYS_OF_WEEK:
            raise ValidationError('Invalid day of week')
        values['day_of_week'] = day

        start = parse_time(data.get('start_time'), 'startTime')
        end = parse_time(data.get('end_time'), 'endTime')
        if start >= end:
            raise ValidationError('startTime must be before endTime')
        values['start_time'] = format_time(start)
        values['end_time'] = format_time(end)

        for name in _REQUIRED_TEXT:
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f'{name} is required and must be a string')
            values[name] = value.strip()

        latitude, longitude = data.get('latitude'), data.get('longitude')
        if latitude is None and longitude is None:
            values['latitude'] = values['longitude'] = None
        else:
            location = validate_coordinates(latitude, longitude)
            values['latitude'], values['longitude'] = location.latitude, location.longitude
        return values


__all__ = ['EDITABLE_FIELDS', 'ScheduleConflictEngine', 'as_id', 'format_time', 'overlaps', 'parse_time']
