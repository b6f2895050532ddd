import sys
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

sys.path.append(str(Path(__file__).resolve().parents[1]))

import db_utils
from db_utils import atomic, backoff_delays, retry_with_backoff
from errors import ConflictError
from models import ClassEnrollment


def test_backoff_delays_double_within_budget():
    assert backoff_delays(3, 0.1, 2.0) == [0.1, 0.2]
    assert backoff_delays(5, 1.0, 2.5) == [1.0, 1.5]
    assert backoff_delays(1, 0.1, 2.0) == []


def test_retry_recovers_from_transient_failures(monkeypatch):
    sleeps = []
    monkeypatch.setattr(db_utils.time, 'sleep', sleeps.append)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError('SELECT 1', {}, Exception('database is locked'))
        return 'ready'

    assert retry_with_backoff(flaky) == 'ready'
    assert sleeps == [0.1, 0.2]


def test_retry_gives_up_with_the_last_error(monkeypatch):
    monkeypatch.setattr(db_utils.time, 'sleep', lambda _delay: None)

    def broken():
        raise OperationalError('SELECT 1', {}, Exception('unreachable'))

    with pytest.raises(OperationalError):
        retry_with_backoff(broken, attempts=2)


def test_atomic_maps_unique_violations_to_conflicts(store, world):
    with pytest.raises(ConflictError) as excinfo:
        with atomic(store.session, 'Already enrolled'):
            store.session.add(ClassEnrollment(class_id=world.class_id, student_id=world.student))
    assert excinfo.value.detail == 'Already enrolled'
    assert store.users.is_enrolled(world.student, world.class_id)


def test_atomic_rolls_back_on_other_errors(store, world):
    with pytest.raises(RuntimeError):
        with atomic(store.session):
            store.session.add(ClassEnrollment(class_id=world.other_class_id, student_id=world.student))
            store.session.flush()
            raise RuntimeError('boom')
    assert not store.users.is_enrolled(world.student, world.other_class_id)
