import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import create_app
from auth import issue_access_token
from config import AttendanceSettings
from models import ClassEnrollment, SchoolClass, User, db
from repositories import Store

TEST_SECRET = 'test-jwt-secret-that-is-long-enough-for-hs256'

# A Monday.
MONDAY_9AM = datetime(2025, 3, 3, 9, 0)

CAMPUS = (41.0082, 28.9784)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(MONDAY_9AM)


@pytest.fixture
def settings() -> AttendanceSettings:
    return AttendanceSettings(jwt_secret=TEST_SECRET)


@pytest.fixture
def app(clock, monkeypatch: pytest.MonkeyPatch) -> Generator:
    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    application = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'JWT_SECRET': TEST_SECRET,
        'ATTENDANCE_CLOCK': clock,
    })
    yield application
    with application.app_context():
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def world(app) -> SimpleNamespace:
    """Users, classes and enrollments shared by most tests, as plain ids."""
    with app.app_context():
        users = {
            'teacher': User(full_name='Ada Teacher', email='teacher@example.edu', role='teacher'),
            'other_teacher': User(full_name='Bo Teacher', email='bo@example.edu', role='teacher'),
            'student': User(full_name='Sam Student', email='sam@example.edu', role='student'),
            'outsider': User(full_name='Oli Student', email='oli@example.edu', role='student'),
            'admin': User(full_name='Alex Admin', email='admin@example.edu', role='admin'),
        }
        db.session.add_all(users.values())
        db.session.commit()

        school_class = SchoolClass(class_number='CS-101', subject_code='CS101', subject_name='Algorithms',
                                   semester='1', division='A', teacher_id=users['teacher'].id)
        other_class = SchoolClass(class_number='MA-201', subject_code='MA201', subject_name='Calculus',
                                  semester='1', division='A', teacher_id=users['other_teacher'].id)
        db.session.add_all([school_class, other_class])
        db.session.commit()
        db.session.add(ClassEnrollment(class_id=school_class.id, student_id=users['student'].id))
        db.session.commit()

        ids = {name: user.id for name, user in users.items()}
        headers = {
            name: {'Authorization': f'Bearer {issue_access_token(user, TEST_SECRET)}'}
            for name, user in users.items()
        }
        return SimpleNamespace(class_id=school_class.id, other_class_id=other_class.id,
                               headers=headers, **ids)


@pytest.fixture
def store(app, world) -> Generator:
    with app.app_context():
        yield Store(db.session)


@pytest.fixture
def schedule_data(world):
    """Factory for snake_case schedule payloads of the demo teacher."""

    def build(**overrides):
        data = {
            'class_id': world.class_id,
            'teacher_id': world.teacher,
            'session_type': 'lecture',
            'day_of_week': 'Monday',
            'start_time': '09:00',
            'end_time': '10:00',
            'room_number': 'B-204',
            'semester': '1',
            'academic_year': '2025-2026',
        }
        data.update(overrides)
        return data

    return build
