"""Flask application for the QR attendance service.

This module wires together the configuration, database models, logging
middleware and the JSON API blueprint (see :mod:`api` for the endpoints).
Every error leaves the service as an RFC 7807 problem-details document:

* domain errors (:mod:`errors`) with their own status code;
* Werkzeug HTTP errors such as 404 for unknown routes or 401 for a missing
  bearer token;
* database failures, reported as 503 so clients retry later.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

import click
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from api import api
from app_logging import configure_logging, get_logger, get_request_id
from config import AttendanceSettings, Config, wall_clock
from correlation_id_middleware import init_correlation_id
from db_utils import retry_with_backoff
from errors import AttendanceError
from models import db
from repositories import Store
from request_logging_middleware import init_request_logging
from session_manager import SessionManager

_logger = get_logger(__name__)


def problem(status: int, title: str, detail: str, **extra: Any):
    body = {
        'type': 'about:blank',
        'title': title,
        'status': status,
        'detail': detail,
        'request_id': get_request_id(),
    }
    body.update(extra)
    response = jsonify(body)
    response.status_code = status
    response.mimetype = 'application/problem+json'
    return response


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    """Application factory used by both the server and tests.

    ``overrides`` is applied on top of :class:`config.Config` before the
    database is bound, so tests can point ``SQLALCHEMY_DATABASE_URI`` at an
    in-memory database. An ``ATTENDANCE_CLOCK`` override replaces the wall
    clock the domain components read.
    """
    configure_logging()
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    app.extensions['attendance_clock'] = (app.config.get('ATTENDANCE_CLOCK')
                                          or wall_clock(app.config['ATTENDANCE_TIMEZONE']))

    init_correlation_id(app)
    init_request_logging(app)
    db.init_app(app)
    app.register_blueprint(api)

    with app.app_context():
        try:
            retry_with_backoff(db.create_all)
        except SQLAlchemyError as exc:
            # Keep starting; /health and the 503 handler surface the outage.
            _logger.warning('Database unavailable during table creation', extra={'error': str(exc)})

    @app.route('/health')
    def healthcheck():
        return jsonify({'status': 'ok'}), 200

    @app.errorhandler(AttendanceError)
    def handle_domain_error(error: AttendanceError):
        _logger.info('request rejected', extra={'error_kind': type(error).__name__, 'detail': error.detail})
        return problem(error.status_code, error.title, error.detail, **error.extra_fields())

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return problem(error.code or 500, error.name, error.description or error.name)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(error: SQLAlchemyError):
        db.session.rollback()
        _logger.error('Database operation failed', exc_info=error)
        return problem(503, 'Service Unavailable', 'Database temporarily unavailable')

    @app.cli.command('seed')
    def seed_command() -> None:
        """Load demo users, a class, an enrollment and a schedule."""
        from seed import seed_data

        seed_data()
        click.echo('Database seeded successfully.')

    @app.cli.command('purge-sessions')
    def purge_sessions_command() -> None:
        """Delete expired QR sessions no attendance refers to."""
        manager = SessionManager(Store(db.session), AttendanceSettings.from_mapping(app.config),
                                 app.extensions['attendance_clock'])
        click.echo(f'Purged {manager.purge_expired()} expired sessions.')

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    create_app().run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG') == '1')
