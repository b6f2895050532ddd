"""Great-circle distance and coordinate validation."""

from __future__ import annotations

from math import atan2, cos, isinf, isnan, radians, sin, sqrt
from typing import Any, Mapping, NamedTuple, Optional

from errors import ValidationError

EARTH_RADIUS_METERS = 6371000.0


class Coordinates(NamedTuple):
    latitude: float
    longitude: float

    def to_dict(self) -> dict:
        return {'latitude': self.latitude, 'longitude': self.longitude}


def _as_number(value: Any, name: str) -> float:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'{name} must be a number')
    number = float(value)
    if isnan(number) or isinf(number):
        raise ValidationError(f'{name} must be a finite number')
    return number


def validate_coordinates(latitude: Any, longitude: Any) -> Coordinates:
    """Return validated :class:`Coordinates` or raise :class:`ValidationError`."""
    lat = _as_number(latitude, 'latitude')
    lon = _as_number(longitude, 'longitude')
    if not -90.0 <= lat <= 90.0:
        raise ValidationError('Invalid coordinates: latitude must be in [-90, 90]')
    if not -180.0 <= lon <= 180.0:
        raise ValidationError('Invalid coordinates: longitude must be in [-180, 180]')
    return Coordinates(lat, lon)


def coordinates_from_payload(payload: Optional[Mapping[str, Any]], name: str = 'coordinates') -> Coordinates:
    """Read ``{"latitude": .., "longitude": ..}`` from a request payload."""
    if not isinstance(payload, Mapping):
        raise ValidationError(f'{name} must be an object with latitude and longitude')
    return validate_coordinates(payload.get('latitude'), payload.get('longitude'))


def distance(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance between ``a`` and ``b`` in metres."""
    a = validate_coordinates(*a)
    b = validate_coordinates(*b)
    lat1, lon1, lat2, lon2 = map(radians, [a.latitude, a.longitude, b.latitude, b.longitude])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    h = min(1.0, h)
    return EARTH_RADIUS_METERS * 2 * atan2(sqrt(h), sqrt(1 - h))


__all__ = ['Coordinates', 'EARTH_RADIUS_METERS', 'coordinates_from_payload', 'distance', 'validate_coordinates']
