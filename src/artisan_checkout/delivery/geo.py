"""Great-circle distance helpers."""

from __future__ import annotations

import math

from artisan_checkout.errors import InvalidCoordinates
from artisan_checkout.models import Coordinates

EARTH_RADIUS_KM = 6371.0


def _validate(point: Coordinates | None, label: str) -> Coordinates:
    if point is None:
        raise InvalidCoordinates(f"Missing {label} coordinates", field=label)
    lat, lon = point.lat, point.lon
    if math.isnan(lat) or math.isnan(lon) or math.isinf(lat) or math.isinf(lon):
        raise InvalidCoordinates(f"Invalid {label} coordinates ({lat}, {lon})", field=label)
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidCoordinates(f"Out-of-range {label} coordinates ({lat}, {lon})", field=label)
    return point


def haversine_km(origin: Coordinates | None, destination: Coordinates | None) -> float:
    """Return the great-circle distance in kilometres between two points.

    Raises :class:`InvalidCoordinates` for missing or malformed input rather
    than returning a distance that could be mistaken for "in range".
    """
    a = _validate(origin, "origin")
    b = _validate(destination, "destination")

    d_lat = math.radians(b.lat - a.lat)
    d_lon = math.radians(b.lon - a.lon)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def format_km(value: float) -> str:
    """Render a radius for messages: ``10`` -> ``10km``, ``7.5`` -> ``7.5km``."""
    if float(value).is_integer():
        return f"{int(value)}km"
    return f"{value:g}km"
