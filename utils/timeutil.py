# utils/timeutil.py
from __future__ import annotations

import datetime as dt
from datetime import timedelta, timezone
from typing import Any, Optional

from dateutil import parser as dtparse
from dateutil import tz

from services.errors import InvalidRequest

# Asia/Dhaka has no DST; used when APP_TIMEZONE cannot be resolved
_DHAKA = timezone(timedelta(hours=6))


def now_utc_naive() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def service_zone(name: Optional[str]) -> dt.tzinfo:
    """tzinfo for the configured APP_TIMEZONE (an IANA name)."""
    return (tz.gettz(name) if name else None) or _DHAKA


def local_date(at: dt.datetime, zone: Optional[dt.tzinfo] = None) -> dt.date:
    """Service-zone calendar date of a naive-UTC instant."""
    return at.replace(tzinfo=timezone.utc).astimezone(zone or _DHAKA).date()


def today_local(zone: Optional[dt.tzinfo] = None) -> dt.date:
    return local_date(now_utc_naive(), zone)


def _as_utc_naive(x: dt.datetime) -> dt.datetime:
    if x.tzinfo is None:
        return x
    return x.astimezone(timezone.utc).replace(tzinfo=None)


def parse_event_time(raw: Any) -> dt.datetime:
    """
    Device timestamps arrive as ISO strings (with or without offset) or epoch
    millis. Stored as naive UTC. Missing → server time.
    """
    if raw is None or raw == "":
        return now_utc_naive()
    if isinstance(raw, dt.datetime):
        return _as_utc_naive(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return dt.datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            raise InvalidRequest("timestamp is out of range")
    try:
        return _as_utc_naive(dtparse.isoparse(str(raw)))
    except (ValueError, OverflowError):
        raise InvalidRequest("timestamp must be ISO-8601 or epoch milliseconds")


def parse_time_filter(raw: Any, field: str) -> Optional[dt.datetime]:
    """Optional ?from= / ?to= bound as naive UTC."""
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return _as_utc_naive(dtparse.isoparse(str(raw).strip()))
    except (ValueError, OverflowError):
        raise InvalidRequest(f"{field} must be ISO-8601")


def parse_travel_date(raw: Any, *, zone: Optional[dt.tzinfo] = None) -> dt.date:
    """A YYYY-MM-DD travel date; missing → today in the service zone."""
    if raw is None or raw == "":
        return today_local(zone)
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    try:
        return dtparse.isoparse(str(raw)).date()
    except (ValueError, OverflowError):
        raise InvalidRequest("travel_date must be YYYY-MM-DD")


def iso_utc(x: Optional[dt.datetime]) -> Optional[str]:
    if x is None:
        return None
    return x.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def duration_minutes(start: dt.datetime, end: dt.datetime) -> int:
    return int(round((end - start).total_seconds() / 60.0))
