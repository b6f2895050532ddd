"""Application configuration module.

Settings are read from environment variables, with a local ``.env`` file
loaded first when present. Hosting platforms that hand out a
``DATABASE_URL`` beginning with ``postgres://`` are normalised to the
``postgresql://`` scheme SQLAlchemy expects; without a URL the application
falls back to a local SQLite database.

The tunables of the attendance core (session lifetime, token rotation,
geofence radius, late threshold) are collected into
:class:`AttendanceSettings` so the domain components never read
``app.config`` directly.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from models import utcnow


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Config:
    """Base configuration class read by :meth:`flask.Flask.config.from_object`."""

    load_dotenv()

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # Only the scheme prefix is rewritten.
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///attendance.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Signing key for QR rotation tokens and API bearer tokens.
    JWT_SECRET = os.environ.get('JWT_SECRET', 'change-this-jwt-secret-in-prod')
    JWT_ALGORITHM = os.environ.get('JWT_ALGORITHM', 'HS256')

    QR_SESSION_EXPIRY_MINUTES = _env_int('QR_SESSION_EXPIRY_MINUTES', 5)
    QR_ROTATION_SECONDS = _env_int('QR_ROTATION_SECONDS', 15)
    MAX_ATTENDANCE_DISTANCE_METERS = _env_int('MAX_ATTENDANCE_DISTANCE_METERS', 100)
    LATE_THRESHOLD_MINUTES = _env_int('LATE_THRESHOLD_MINUTES', 15)
    SYNC_CLOCK_SKEW_SECONDS = _env_int('SYNC_CLOCK_SKEW_SECONDS', 300)

    # Wall-clock zone used for schedule times and stored timestamps.
    ATTENDANCE_TIMEZONE = os.environ.get('ATTENDANCE_TIMEZONE', 'UTC')


@dataclass(frozen=True)
class AttendanceSettings:
    """Tunables shared by the session, schedule and attendance components."""

    jwt_secret: str
    jwt_algorithm: str = 'HS256'
    session_lifetime: timedelta = timedelta(minutes=5)
    rotation_window: timedelta = timedelta(seconds=15)
    max_distance_meters: float = 100.0
    late_threshold: timedelta = timedelta(minutes=15)
    sync_clock_skew: timedelta = timedelta(seconds=300)
    zone_name: str = 'UTC'

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'AttendanceSettings':
        return cls(
            jwt_secret=config['JWT_SECRET'],
            jwt_algorithm=config.get('JWT_ALGORITHM', 'HS256'),
            session_lifetime=timedelta(minutes=int(config.get('QR_SESSION_EXPIRY_MINUTES', 5))),
            rotation_window=timedelta(seconds=int(config.get('QR_ROTATION_SECONDS', 15))),
            max_distance_meters=float(config.get('MAX_ATTENDANCE_DISTANCE_METERS', 100)),
            late_threshold=timedelta(minutes=int(config.get('LATE_THRESHOLD_MINUTES', 15))),
            sync_clock_skew=timedelta(seconds=int(config.get('SYNC_CLOCK_SKEW_SECONDS', 300))),
            zone_name=config.get('ATTENDANCE_TIMEZONE', 'UTC'),
        )


def local_zone(zone_name: str) -> tzinfo:
    return timezone.utc if zone_name.upper() == 'UTC' else ZoneInfo(zone_name)


def to_wall_time(moment: datetime, zone_name: str) -> datetime:
    """Naive wall-clock time in ``zone_name``; naive input is returned as is."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(local_zone(zone_name)).replace(tzinfo=None)


def wall_clock(zone_name: str) -> Callable[[], datetime]:
    """Clock returning the naive current time in ``zone_name``.

    Schedule times are wall-clock times of the institution, so lateness and
    the weekday views are computed in that zone.
    """
    if zone_name.upper() == 'UTC':
        return utcnow
    zone = local_zone(zone_name)

    def now() -> datetime:
        return datetime.now(zone).replace(tzinfo=None)

    return now
