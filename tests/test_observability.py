import json
import logging
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app_logging import JSONFormatter, clear_request_context, merge_request_context, redact_sensitive_data
from correlation_id_middleware import HEADER_NAME


def test_health_endpoint(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok'}


def test_request_id_propagation(client):
    response = client.get('/health', headers={HEADER_NAME: 'test-id-123'})
    assert response.headers.get(HEADER_NAME) == 'test-id-123'


@pytest.mark.parametrize('candidate', ['', 'has spaces', 'x' * 129, 'semi;colon'])
def test_unusable_request_ids_are_replaced(client, candidate):
    response = client.get('/health', headers={HEADER_NAME: candidate})
    request_id = response.headers.get(HEADER_NAME)
    assert request_id and request_id != candidate
    assert len(request_id) == 32


def test_unknown_route_returns_problem_details(client):
    response = client.get('/api/does-not-exist', headers={HEADER_NAME: 'trace-404'})
    data = response.get_json()
    assert response.status_code == 404
    assert response.mimetype == 'application/problem+json'
    assert data['status'] == 404
    assert data['title']
    assert data['detail']
    assert data['request_id'] == 'trace-404'


def test_request_logs_are_structured(client, world, caplog):
    caplog.set_level(logging.INFO, logger='attendance.request')
    client.get('/api/qr/active', headers=world.headers['teacher'])
    messages = [record.getMessage() for record in caplog.records if record.name == 'attendance.request']
    assert messages == ['request_start', 'request_end']
    end = [record for record in caplog.records if record.getMessage() == 'request_end'][0]
    assert end.status == 200


def test_health_checks_are_not_logged(client, caplog):
    caplog.set_level(logging.INFO, logger='attendance.request')
    client.get('/health')
    assert not [record for record in caplog.records if record.name == 'attendance.request']


def test_redaction_is_recursive_and_case_insensitive():
    data = {
        'Token': 'abc',
        'nested': {'faceEmbedding': [0.1, 0.2], 'keep': 1},
        'items': [{'password': 'secret'}],
    }
    assert redact_sensitive_data(data) == {
        'Token': '[REDACTED]',
        'nested': {'faceEmbedding': '[REDACTED]', 'keep': 1},
        'items': [{'password': '[REDACTED]'}],
    }


def test_json_formatter_emits_request_context_and_redacted_extras():
    merge_request_context(method='POST', path='/api/attendances', actor_id=7)
    try:
        record = logging.LogRecord('attendance', logging.INFO, __file__, 1, 'attendance_submitted', None, None)
        record.session_id = 'a' * 32
        record.token = 'QR_secret'
        line = json.loads(JSONFormatter().format(record))
    finally:
        clear_request_context()

    assert line['msg'] == 'attendance_submitted'
    assert line['level'] == 'INFO'
    assert line['method'] == 'POST'
    assert line['actor_id'] == 7
    assert line['extra_context']['session_id'] == 'a' * 32
    assert line['extra_context']['token'] == '[REDACTED]'
    assert line['stack'] is None
