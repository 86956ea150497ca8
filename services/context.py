# services/context.py
"""Request-scoped wiring of the services to Flask-SQLAlchemy and app config."""
from __future__ import annotations

from flask import current_app

from db import db
from services.fare_meter import FareMeter
from services.seats import SeatReservations
from services.settings import FareSettings
from services.stores import Stores


def current_settings() -> FareSettings:
    return FareSettings.from_config(current_app.config)


def current_stores() -> Stores:
    return Stores(db.session)


def fare_meter() -> FareMeter:
    return FareMeter(current_stores(), current_settings())


def seat_reservations() -> SeatReservations:
    return SeatReservations(current_stores(), current_settings())
