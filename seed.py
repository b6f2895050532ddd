"""Seed the database with demo data.

Creates a teacher, two students and an administrator, one class with both
students enrolled and a Monday lecture. Bearer tokens for the demo users are
printed so the API can be tried right away.

Usage:
    flask --app app seed
"""

from typing import Dict

from flask import current_app

from auth import issue_access_token
from models import ClassEnrollment, Schedule, SchoolClass, User, db


DEMO_USERS = [
    ('Ada Teacher', 'teacher@example.edu', 'teacher'),
    ('Sam Student', 'student1@example.edu', 'student'),
    ('Kim Student', 'student2@example.edu', 'student'),
    ('Alex Admin', 'admin@example.edu', 'admin'),
]


def seed_data() -> Dict[str, User]:
    """Recreate the tables and insert the demo data; returns users by email."""
    # Dropping everything is fine for a demo database; use migrations elsewhere.
    db.drop_all()
    db.create_all()

    users: Dict[str, User] = {}
    for full_name, email, role in DEMO_USERS:
        users[email] = User(full_name=full_name, email=email, role=role)
        db.session.add(users[email])
    db.session.commit()

    teacher = users['teacher@example.edu']
    school_class = SchoolClass(class_number='CS-101', subject_code='CS101', subject_name='Algorithms',
                               semester='1', division='A', teacher_id=teacher.id)
    db.session.add(school_class)
    db.session.commit()

    for user in users.values():
        if user.role == 'student':
            db.session.add(ClassEnrollment(class_id=school_class.id, student_id=user.id))
    db.session.add(Schedule(class_id=school_class.id, teacher_id=teacher.id, session_type='lecture',
                            day_of_week='Monday', start_time='09:00', end_time='10:00', room_number='B-204',
                            semester='1', academic_year='2025-2026', latitude=41.0082, longitude=28.9784))
    db.session.commit()

    secret = current_app.config['JWT_SECRET']
    algorithm = current_app.config['JWT_ALGORITHM']
    for email, user in users.items():
        print(f'{user.role:<8} {email:<24} {issue_access_token(user, secret, algorithm)}')
    return users
