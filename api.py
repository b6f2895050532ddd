"""JSON endpoints of the attendance service.

Request and response bodies use camelCase field names. The domain
components are built per request around ``db.session``; the clock they read
is ``app.extensions['attendance_clock']``, installed by :func:`app.create_app`.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple

from flask import Blueprint, current_app, jsonify, request

from attendance_reconciler import AttendanceReconciler
from auth import current_user, require_roles
from config import AttendanceSettings
from errors import AuthorizationError, ValidationError
from geo import coordinates_from_payload
from models import db
from repositories import Store
from schedule_engine import ScheduleConflictEngine, as_id
from session_manager import LEGACY_PREFIX, SessionManager

api = Blueprint('api', __name__, url_prefix='/api')

_SCHEDULE_FIELDS = {
    'classId': 'class_id',
    'teacherId': 'teacher_id',
    'sessionType': 'session_type',
    'dayOfWeek': 'day_of_week',
    'startTime': 'start_time',
    'endTime': 'end_time',
    'roomNumber': 'room_number',
    'semester': 'semester',
    'academicYear': 'academic_year',
    'isActive': 'is_active',
}


def _store() -> Store:
    return Store(db.session)


def _settings() -> AttendanceSettings:
    return AttendanceSettings.from_mapping(current_app.config)


def _clock():
    return current_app.extensions['attendance_clock']


def _sessions(store: Store) -> SessionManager:
    return SessionManager(store, _settings(), _clock())


def _engine() -> ScheduleConflictEngine:
    return ScheduleConflictEngine(_store(), _clock())


def _reconciler() -> AttendanceReconciler:
    store = _store()
    return AttendanceReconciler(store, _sessions(store), _settings(), _clock())


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload


def _location(value: Any) -> Tuple[Any, Any]:
    """Accept ``{latitude, longitude}`` or a GeoJSON point ``{coordinates: [lon, lat]}``."""
    if isinstance(value, Mapping) and 'coordinates' in value:
        coordinates = value['coordinates']
        if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
            raise ValidationError('location.coordinates must be [longitude, latitude]')
        return coordinates[1], coordinates[0]
    if isinstance(value, Mapping):
        return value.get('latitude'), value.get('longitude')
    raise ValidationError('location must be an object')


def _schedule_values(payload: Mapping[str, Any]) -> Dict[str, Any]:
    values = {snake: payload[camel] for camel, snake in _SCHEDULE_FIELDS.items() if camel in payload}
    if 'location' in payload:
        if payload['location'] is None:
            values['latitude'] = values['longitude'] = None
        else:
            values['latitude'], values['longitude'] = _location(payload['location'])
    return values


def _target_teacher(raw: Any) -> int:
    """Teacher whose schedules are queried; teachers may only query themselves."""
    user = current_user()
    if raw in (None, ''):
        return user.id
    teacher_id = as_id(raw, 'teacher ID')
    if user.role != 'admin' and teacher_id != user.id:
        raise AuthorizationError('Teacher ID must match authenticated user')
    return teacher_id


# ----------------------------------------------------------------------
# QR sessions
# ----------------------------------------------------------------------

@api.route('/qr/generate', methods=['POST'])
@require_roles('teacher')
def generate_session():
    payload = _json_body()
    coordinates = coordinates_from_payload(payload.get('coordinates'))
    store = _store()
    qr_session = _sessions(store).generate(current_user().id, payload.get('classId'), coordinates,
                                           payload.get('scheduleId'))
    return jsonify({
        'sessionId': qr_session.session_id,
        'token': qr_session.token,
        'expiredAt': qr_session.expires_at.isoformat(),
        'qrPayload': {
            'sessionId': qr_session.session_id,
            'token': LEGACY_PREFIX + qr_session.session_id,
            'timestamp': qr_session.issued_at.isoformat(),
        },
        'session': qr_session.to_dict(),
    }), 201


@api.route('/qr/refresh/<session_id>', methods=['POST'])
@require_roles('teacher')
def refresh_session(session_id: str):
    qr_session = _sessions(_store()).refresh(current_user().id, session_id)
    return jsonify({
        'sessionId': qr_session.session_id,
        'token': qr_session.token,
        'expiredAt': qr_session.expires_at.isoformat(),
    })


@api.route('/qr/terminate/<session_id>', methods=['DELETE'])
@require_roles('teacher')
def terminate_session(session_id: str):
    qr_session = _sessions(_store()).terminate(current_user().id, session_id)
    return jsonify({'message': 'Session terminated', 'session': qr_session.to_dict()})


@api.route('/qr/terminate-all', methods=['DELETE'])
@require_roles('teacher')
def terminate_all_sessions():
    count = _sessions(_store()).terminate_all(current_user().id)
    return jsonify({'terminatedCount': count})


@api.route('/qr/active', methods=['GET'])
@require_roles('teacher')
def active_sessions():
    sessions = _sessions(_store()).active_for(current_user().id)
    return jsonify({'sessions': [qr_session.to_dict() for qr_session in sessions]})


@api.route('/qr/validate', methods=['POST'])
@require_roles('student')
def validate_token():
    payload = _json_body()
    qr_session = _sessions(_store()).validate(payload.get('token'), current_user().id)
    return jsonify({
        'valid': True,
        'sessionId': qr_session.session_id,
        'classId': qr_session.class_id,
        'scheduleId': qr_session.schedule_id,
        'expiredAt': qr_session.expires_at.isoformat(),
    })


# ----------------------------------------------------------------------
# Attendance
# ----------------------------------------------------------------------

@api.route('/attendances', methods=['POST'])
@require_roles('student')
def submit_attendance():
    payload = _json_body()
    coordinates = coordinates_from_payload(payload.get('studentCoordinates'), 'studentCoordinates')
    record = _reconciler().submit(
        current_user().id,
        payload.get('sessionId'),
        payload.get('classId'),
        coordinates,
        schedule_id=payload.get('scheduleId'),
        liveness_passed=payload.get('livenessPassed', False),
        face_embedding=payload.get('faceEmbedding'),
    )
    return jsonify(record.to_dict()), 201


@api.route('/attendances/sync', methods=['POST'])
@require_roles('student')
def sync_attendance():
    payload = _json_body()
    return jsonify(_reconciler().sync(current_user().id, payload.get('attendances')))


@api.route('/attendances/manual', methods=['POST'])
@require_roles('teacher', 'admin')
def manual_attendance():
    payload = _json_body()
    record = _reconciler().manual_entry(
        current_user().id,
        payload.get('studentId'),
        payload.get('classId'),
        payload.get('scheduleId'),
        status=payload.get('status', 'present'),
        attended_at=payload.get('attendedAt'),
    )
    return jsonify(record.to_dict()), 201


@api.route('/attendances/records', methods=['GET'])
@require_roles('teacher', 'admin')
def all_attendance():
    report = _reconciler().all_records(
        current_user().id,
        start=request.args.get('startDate'),
        end=request.args.get('endDate'),
        status=request.args.get('status'),
    )
    return jsonify(report.to_dict())


@api.route('/attendances/records/class/<int:class_id>', methods=['GET'])
@require_roles('teacher', 'admin')
def class_attendance(class_id: int):
    report = _reconciler().class_report(
        current_user().id,
        class_id,
        start=request.args.get('startDate'),
        end=request.args.get('endDate'),
        status=request.args.get('status'),
    )
    return jsonify(report.to_dict())


@api.route('/attendances/records/student/<int:student_id>', methods=['GET'])
@require_roles('teacher', 'admin')
def student_attendance(student_id: int):
    report = _reconciler().student_report(
        current_user().id,
        student_id,
        start=request.args.get('startDate'),
        end=request.args.get('endDate'),
        class_id=request.args.get('classId'),
    )
    return jsonify(report.to_dict())


# ----------------------------------------------------------------------
# Schedules
# ----------------------------------------------------------------------

@api.route('/schedules', methods=['GET'])
@require_roles('teacher', 'admin')
def list_schedules():
    include_inactive = request.args.get('includeInactive', '').lower() in ('1', 'true')
    schedules = _engine().search(current_user().id, request.args.get('teacherId') or None, include_inactive)
    return jsonify({'schedules': [schedule.to_dict() for schedule in schedules]})


@api.route('/schedules/<int:schedule_id>', methods=['GET'])
@require_roles('teacher', 'admin')
def get_schedule(schedule_id: int):
    return jsonify(_engine().get(current_user().id, schedule_id).to_dict())


@api.route('/schedules', methods=['POST'])
@require_roles('teacher', 'admin')
def create_schedule():
    values = _schedule_values(_json_body())
    values.setdefault('teacher_id', current_user().id)
    schedule = _engine().create(current_user().id, values)
    return jsonify(schedule.to_dict()), 201


@api.route('/schedules/<int:schedule_id>', methods=['PUT'])
@require_roles('teacher', 'admin')
def update_schedule(schedule_id: int):
    schedule = _engine().update(current_user().id, schedule_id, _schedule_values(_json_body()))
    return jsonify(schedule.to_dict())


@api.route('/schedules/<int:schedule_id>', methods=['DELETE'])
@require_roles('teacher', 'admin')
def delete_schedule(schedule_id: int):
    schedule = _engine().delete(current_user().id, schedule_id)
    return jsonify({'message': 'Schedule deleted', 'schedule': schedule.to_dict()})


@api.route('/schedules/bulk', methods=['POST'])
@require_roles('teacher', 'admin')
def bulk_create_schedules():
    items = _json_body().get('schedules')
    if not isinstance(items, list):
        raise ValidationError('schedules must be a list')
    user_id = current_user().id
    values = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ValidationError('Each schedule must be an object')
        entry = _schedule_values(item)
        entry.setdefault('teacher_id', user_id)
        values.append(entry)
    created, errors = _engine().create_many(user_id, values)
    body = {'created': [schedule.to_dict() for schedule in created], 'errors': errors}
    return jsonify(body), 201 if created else 200


@api.route('/schedules/merge', methods=['POST'])
@require_roles('teacher', 'admin')
def merge_schedules():
    merged = _engine().merge(current_user().id, _json_body().get('scheduleIds'))
    return jsonify(merged.to_dict()), 201


@api.route('/schedules/split/<int:schedule_id>', methods=['POST'])
@require_roles('teacher', 'admin')
def split_schedule(schedule_id: int):
    pieces = _engine().split(current_user().id, schedule_id, _json_body().get('splitPoints'))
    return jsonify({'schedules': [piece.to_dict() for piece in pieces]}), 201


@api.route('/schedules/check-conflict', methods=['POST'])
@require_roles('teacher', 'admin')
def check_schedule_conflict():
    payload = _json_body()
    exclude = payload.get('excludeId')
    conflict = _engine().check_conflict(
        _target_teacher(payload.get('teacherId')),
        payload.get('dayOfWeek'),
        payload.get('startTime'),
        payload.get('endTime'),
        exclude_ids=() if exclude is None else (as_id(exclude, 'excludeId'),),
    )
    if conflict is None:
        return jsonify({'conflict': False})
    return jsonify({'conflict': True, 'conflictingSchedule': conflict.to_dict()})


@api.route('/schedules/weekly', methods=['GET'])
@require_roles('teacher', 'admin')
def weekly_schedule():
    week = _engine().weekly(_target_teacher(request.args.get('teacherId')))
    return jsonify({day: [schedule.to_dict() for schedule in schedules] for day, schedules in week.items()})


@api.route('/schedules/today', methods=['GET'])
@require_roles('teacher', 'admin')
def todays_schedule():
    day = _clock()().strftime('%A')
    schedules = _engine().for_day(_target_teacher(request.args.get('teacherId')), day)
    return jsonify({'day': day, 'schedules': [schedule.to_dict() for schedule in schedules]})


__all__ = ['api']
