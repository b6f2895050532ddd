import sys
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

sys.path.append(str(Path(__file__).resolve().parents[1]))

from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import AuditLog, Schedule
from repositories import teacher_lock
from schedule_engine import ScheduleConflictEngine, format_time, overlaps, parse_time


@pytest.fixture
def engine(store, clock):
    return ScheduleConflictEngine(store, clock)


def _active(store, teacher_id):
    return [(s.start_time, s.end_time) for s in store.schedules.active_for_teacher(teacher_id, 'Monday')]


def test_time_helpers():
    assert parse_time('09:05') == 545
    assert format_time(545) == '09:05'
    for bad in ('9:00', '24:00', '12:60', '', None, 900):
        with pytest.raises(ValidationError):
            parse_time(bad)


def test_overlap_is_symmetric_and_half_open():
    assert overlaps(540, 600, 570, 630) and overlaps(570, 630, 540, 600)
    assert not overlaps(540, 600, 600, 660)
    assert not overlaps(600, 660, 540, 600)


def test_create_schedule_and_audit(engine, store, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    assert schedule.id is not None
    assert schedule.is_active
    actions = store.session.execute(select(AuditLog.action)).scalars().all()
    assert actions == ['CREATE_SCHEDULE']


def test_back_to_back_schedules_do_not_conflict(engine, world, schedule_data):
    engine.create(world.teacher, schedule_data())
    later = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00'))
    assert later.start_time == '10:00'


def test_overlapping_schedule_is_rejected_with_the_conflicting_one(engine, store, world, schedule_data):
    existing = engine.create(world.teacher, schedule_data())
    with pytest.raises(ConflictError) as excinfo:
        engine.create(world.teacher, schedule_data(start_time='09:30', end_time='10:30', room_number='C-1'))
    assert excinfo.value.conflicting.id == existing.id
    assert excinfo.value.extra_fields()['conflictingSchedule']['id'] == existing.id
    assert _active(store, world.teacher) == [('09:00', '10:00')]


def test_other_teachers_and_days_do_not_conflict(engine, world, schedule_data):
    engine.create(world.teacher, schedule_data())
    engine.create(world.teacher, schedule_data(day_of_week='Tuesday'))
    engine.create(world.other_teacher, schedule_data(teacher_id=world.other_teacher, class_id=world.other_class_id))


def test_check_conflict(engine, world, schedule_data):
    existing = engine.create(world.teacher, schedule_data())
    assert engine.check_conflict(world.teacher, 'Monday', '09:59', '10:30').id == existing.id
    assert engine.check_conflict(world.teacher, 'Monday', '10:00', '10:30') is None
    assert engine.check_conflict(world.teacher, 'Monday', '09:00', '10:00', exclude_ids=[existing.id]) is None
    with pytest.raises(ValidationError):
        engine.check_conflict(world.teacher, 'Sunday', '09:00', '10:00')
    with pytest.raises(ValidationError):
        engine.check_conflict(world.teacher, 'Monday', '10:00', '09:00')


@pytest.mark.parametrize('overrides', [
    {'start_time': '10:00', 'end_time': '10:00'},
    {'start_time': '11:00', 'end_time': '10:00'},
    {'day_of_week': 'Sunday'},
    {'session_type': 'party'},
    {'room_number': ''},
    {'latitude': 95, 'longitude': 10},
    {'class_id': 'abc'},
])
def test_invalid_schedule_input(engine, world, schedule_data, overrides):
    with pytest.raises(ValidationError):
        engine.create(world.teacher, schedule_data(**overrides))


def test_only_the_owning_teacher_or_an_admin_may_create(engine, world, schedule_data):
    with pytest.raises(AuthorizationError):
        engine.create(world.other_teacher, schedule_data())
    with pytest.raises(AuthorizationError):
        engine.create(world.student, schedule_data())
    assert engine.create(world.admin, schedule_data()).teacher_id == world.teacher


def test_schedule_needs_a_real_teacher_and_class(engine, world, schedule_data):
    with pytest.raises(ValidationError):
        engine.create(world.admin, schedule_data(teacher_id=world.student))
    with pytest.raises(NotFoundError):
        engine.create(world.teacher, schedule_data(class_id=9999))


def test_create_many_collects_failures(engine, world, schedule_data):
    created, errors = engine.create_many(world.teacher, [
        schedule_data(),
        schedule_data(start_time='09:30', end_time='10:30'),
        schedule_data(start_time='11:00', end_time='12:00'),
    ])
    assert [s.start_time for s in created] == ['09:00', '11:00']
    assert len(errors) == 1
    assert errors[0]['index'] == 1
    assert errors[0]['conflictingSchedule']['startTime'] == '09:00'


def test_update_moves_a_schedule_within_its_own_slot(engine, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    updated = engine.update(world.teacher, schedule.id, {'start_time': '09:30', 'end_time': '10:30'})
    assert (updated.start_time, updated.end_time) == ('09:30', '10:30')


def test_update_into_another_schedule_conflicts(engine, world, schedule_data):
    engine.create(world.teacher, schedule_data())
    second = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00'))
    with pytest.raises(ConflictError):
        engine.update(world.teacher, second.id, {'start_time': '09:30'})
    assert second.start_time == '10:00'


def test_update_rejects_inactive_schedules_and_activation(engine, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    with pytest.raises(ValidationError):
        engine.update(world.teacher, schedule.id, {'is_active': False})
    engine.delete(world.teacher, schedule.id)
    with pytest.raises(ValidationError):
        engine.update(world.teacher, schedule.id, {'room_number': 'C-1'})
    with pytest.raises(NotFoundError):
        engine.update(world.teacher, 9999, {'room_number': 'C-1'})


def test_update_by_another_teacher_is_forbidden(engine, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    with pytest.raises(AuthorizationError):
        engine.update(world.other_teacher, schedule.id, {'room_number': 'C-1'})


def test_delete_is_soft_and_idempotent(engine, store, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    engine.delete(world.teacher, schedule.id)
    engine.delete(world.teacher, schedule.id)
    assert store.schedules.get(schedule.id).is_active is False
    assert engine.check_conflict(world.teacher, 'Monday', '09:00', '10:00') is None
    actions = store.session.execute(select(AuditLog.action)).scalars().all()
    assert actions.count('DELETE_SCHEDULE') == 1


def test_merge_adjacent_schedules(engine, store, world, schedule_data):
    first = engine.create(world.teacher, schedule_data())
    second = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00'))
    merged = engine.merge(world.teacher, [first.id, second.id])
    assert (merged.start_time, merged.end_time) == ('09:00', '11:00')
    assert merged.room_number == 'B-204'
    assert _active(store, world.teacher) == [('09:00', '11:00')]
    assert store.schedules.get(first.id).is_active is False
    audit = store.session.execute(select(AuditLog).where(AuditLog.action == 'MERGE_SCHEDULES')).scalar_one()
    assert audit.details['originalScheduleIds'] == [first.id, second.id]


def test_merge_requires_two_distinct_active_schedules(engine, world, schedule_data):
    first = engine.create(world.teacher, schedule_data())
    with pytest.raises(ValidationError):
        engine.merge(world.teacher, [first.id])
    with pytest.raises(ValidationError):
        engine.merge(world.teacher, [first.id, first.id])
    with pytest.raises(ValidationError):
        engine.merge(world.teacher, first.id)
    with pytest.raises(NotFoundError):
        engine.merge(world.teacher, [first.id, 9999])


def test_merge_requires_matching_room(engine, world, schedule_data):
    first = engine.create(world.teacher, schedule_data())
    second = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00', room_number='C-1'))
    with pytest.raises(ValidationError):
        engine.merge(world.teacher, [first.id, second.id])


def test_merge_span_must_not_swallow_another_schedule(engine, store, world, schedule_data):
    first = engine.create(world.teacher, schedule_data())
    engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00', room_number='C-1'))
    last = engine.create(world.teacher, schedule_data(start_time='11:00', end_time='12:00'))
    with pytest.raises(ConflictError):
        engine.merge(world.teacher, [first.id, last.id])
    assert len(_active(store, world.teacher)) == 3


def test_merge_rolls_back_when_inputs_were_consumed_concurrently(engine, store, world, schedule_data, monkeypatch):
    first = engine.create(world.teacher, schedule_data())
    second = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00'))
    monkeypatch.setattr(store.schedules, 'deactivate', lambda ids: 1)
    with pytest.raises(ConflictError):
        engine.merge(world.teacher, [first.id, second.id])
    assert _active(store, world.teacher) == [('09:00', '10:00'), ('10:00', '11:00')]


def test_split_into_three(engine, store, world, schedule_data):
    original = engine.create(world.teacher, schedule_data(end_time='13:15'))
    pieces = engine.split(world.teacher, original.id, ['10:00', '11:15'])
    assert [(p.start_time, p.end_time) for p in pieces] == [
        ('09:00', '10:00'), ('10:00', '11:15'), ('11:15', '13:15')]
    assert all(p.class_id == original.class_id and p.room_number == original.room_number for p in pieces)
    assert store.schedules.get(original.id).is_active is False
    assert _active(store, world.teacher) == [('09:00', '10:00'), ('10:00', '11:15'), ('11:15', '13:15')]


@pytest.mark.parametrize('points', [
    [],
    ['09:00'],
    ['13:15'],
    ['14:00'],
    ['11:00', '10:00'],
    ['10:00', '10:00'],
    ['10:60'],
])
def test_split_rejects_bad_points(engine, world, schedule_data, points):
    original = engine.create(world.teacher, schedule_data(end_time='13:15'))
    with pytest.raises(ValidationError):
        engine.split(world.teacher, original.id, points)
    assert original.is_active


def test_split_of_inactive_schedule_is_not_found(engine, world, schedule_data):
    original = engine.create(world.teacher, schedule_data(end_time='13:15'))
    engine.delete(world.teacher, original.id)
    with pytest.raises(NotFoundError):
        engine.split(world.teacher, original.id, ['10:00'])


def test_split_rolls_back_when_source_was_consumed_concurrently(engine, store, world, schedule_data, monkeypatch):
    original = engine.create(world.teacher, schedule_data(end_time='13:15'))
    monkeypatch.setattr(store.schedules, 'deactivate', lambda ids: 0)
    with pytest.raises(ConflictError):
        engine.split(world.teacher, original.id, ['10:00'])
    assert _active(store, world.teacher) == [('09:00', '13:15')]


def test_weekly_and_daily_views(engine, world, schedule_data, clock):
    engine.create(world.teacher, schedule_data(start_time='11:00', end_time='12:00'))
    engine.create(world.teacher, schedule_data())
    engine.create(world.teacher, schedule_data(day_of_week='Wednesday'))
    week = engine.weekly(world.teacher)
    assert list(week) == ['Monday', 'Wednesday']
    assert [s.start_time for s in week['Monday']] == ['09:00', '11:00']
    assert [s.start_time for s in engine.for_day(world.teacher)] == ['09:00', '11:00']
    clock.advance(days=6)
    assert engine.for_day(world.teacher) == []


def test_schedule_rows_are_never_deleted(engine, store, world, schedule_data):
    first = engine.create(world.teacher, schedule_data())
    second = engine.create(world.teacher, schedule_data(start_time='10:00', end_time='11:00'))
    merged = engine.merge(world.teacher, [first.id, second.id])
    engine.split(world.teacher, merged.id, ['10:30'])
    assert store.session.query(Schedule).count() == 5


def test_get_is_limited_to_the_owner_and_admins(engine, world, schedule_data):
    schedule = engine.create(world.teacher, schedule_data())
    assert engine.get(world.teacher, schedule.id).id == schedule.id
    assert engine.get(world.admin, str(schedule.id)).id == schedule.id
    with pytest.raises(AuthorizationError):
        engine.get(world.other_teacher, schedule.id)
    with pytest.raises(NotFoundError):
        engine.get(world.teacher, 9999)


def test_search_orders_by_weekday_and_scopes_teachers(engine, world, schedule_data):
    wednesday = engine.create(world.teacher, schedule_data(day_of_week='Wednesday'))
    late = engine.create(world.teacher, schedule_data(start_time='11:00', end_time='12:00'))
    early = engine.create(world.teacher, schedule_data())
    foreign = engine.create(world.other_teacher, schedule_data(teacher_id=world.other_teacher,
                                                               class_id=world.other_class_id))
    engine.delete(world.teacher, late.id)

    assert [s.id for s in engine.search(world.teacher)] == [early.id, wednesday.id]
    assert [s.id for s in engine.search(world.teacher, include_inactive=True)] == [early.id, late.id, wednesday.id]
    assert [s.id for s in engine.search(world.admin)] == [early.id, foreign.id, wednesday.id]
    assert [s.id for s in engine.search(world.admin, teacher_id=world.other_teacher)] == [foreign.id]
    with pytest.raises(AuthorizationError):
        engine.search(world.teacher, teacher_id=world.other_teacher)
    with pytest.raises(AuthorizationError):
        engine.search(world.student)


def test_writes_lock_the_teacher_row_first(engine, store, world, schedule_data, monkeypatch):
    locked = []
    monkeypatch.setattr(store.users, 'lock_for_schedule_write', locked.append)
    first = engine.create(world.teacher, schedule_data())
    assert locked == [world.teacher]
    engine.update(world.admin, first.id, {'teacher_id': world.other_teacher, 'class_id': world.other_class_id})
    assert locked[0] == world.teacher
    assert locked[1:] == sorted([world.teacher, world.other_teacher])
    second = engine.create(world.other_teacher, schedule_data(teacher_id=world.other_teacher,
                                                              class_id=world.other_class_id,
                                                              start_time='10:00', end_time='11:00'))
    del locked[:]
    engine.merge(world.other_teacher, [first.id, second.id])
    assert locked == [world.other_teacher]


def test_teacher_lock_renders_select_for_update():
    sql = str(teacher_lock(7).compile(dialect=postgresql.dialect()))
    assert 'FOR UPDATE' in sql
