import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from models import ClassEnrollment, Schedule, User, db


def test_seed_command_loads_demo_data(app):
    result = app.test_cli_runner().invoke(args=['seed'])
    assert result.exit_code == 0, result.output
    assert 'Database seeded successfully.' in result.output
    with app.app_context():
        assert db.session.query(User).count() == 4
        assert db.session.query(ClassEnrollment).count() == 2
        schedule = db.session.query(Schedule).one()
        assert (schedule.day_of_week, schedule.start_time) == ('Monday', '09:00')


def test_purge_sessions_command(app, client, world, clock):
    client.post('/api/qr/generate', json={
        'classId': world.class_id,
        'coordinates': {'latitude': 41.0082, 'longitude': 28.9784},
    }, headers=world.headers['teacher'])
    runner = app.test_cli_runner()
    assert 'Purged 0 expired sessions.' in runner.invoke(args=['purge-sessions']).output
    clock.advance(minutes=5)
    assert 'Purged 1 expired sessions.' in runner.invoke(args=['purge-sessions']).output
