# utils/geo.py
from __future__ import annotations

import math
from typing import Any, NamedTuple, Optional

from services.errors import InvalidLocation

EARTH_RADIUS_KM = 6371.0


class Coordinate(NamedTuple):
    lat: float
    lng: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in km between two WGS84 points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def _first(raw: dict, *keys: str) -> Any:
    for k in keys:
        if raw.get(k) is not None:
            return raw[k]
    return None


def _as_degrees(value: Any, limit: float) -> float:
    if isinstance(value, bool):
        raise InvalidLocation()
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidLocation()
    if not math.isfinite(f) or abs(f) > limit:
        raise InvalidLocation()
    return f


def normalize_location(raw: Any) -> Optional[Coordinate]:
    """
    Coerce whatever a capture device sent into a Coordinate.

    Accepts {"lat","lng"}, {"latitude","longitude"}, {"lat","lon"} or a
    [lat, lng] pair. Empty / missing locations yield None; anything else
    that cannot be read as a valid point raises InvalidLocation.
    """
    if raw is None or raw == "" or raw == {}:
        return None
    if isinstance(raw, Coordinate):
        return raw
    if isinstance(raw, (list, tuple)):
        if len(raw) != 2:
            raise InvalidLocation()
        lat, lng = raw
    elif isinstance(raw, dict):
        lat = _first(raw, "lat", "latitude")
        lng = _first(raw, "lng", "lon", "long", "longitude")
        if lat is None and lng is None:
            return None
        if lat is None or lng is None:
            raise InvalidLocation()
    else:
        raise InvalidLocation()
    return Coordinate(_as_degrees(lat, 90.0), _as_degrees(lng, 180.0))
