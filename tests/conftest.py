from __future__ import annotations

import math
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from app import create_app
from auth_guard import issue_token
from config import TestingConfig
from db import db
from models.booking import Booking
from models.bus import Bus
from models.card import Card, CardTransaction
from models.journey import Journey
from models.route import Route, Stop
from models.user import User
from tests.fakes import FakeStores

# Dhaka, Farmgate
ORIGIN = {"lat": 23.7580, "lng": 90.3900}


def point_km_north(km: float, origin=ORIGIN) -> dict:
    return {"lat": origin["lat"] + math.degrees(km / 6371.0), "lng": origin["lng"]}


@pytest.fixture()
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        ids = _seed()
        app.config["SEED"] = ids
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


def _seed() -> SimpleNamespace:
    r1 = Route(name="Farmgate - Motijheel", base_fare=Decimal("20"), fare_per_km=Decimal("1.5"),
               distance_km=Decimal("8"))
    r1.stops = [
        Stop(seq=1, name="Farmgate", lat=23.7580, lng=90.3900),
        Stop(seq=2, name="Shahbag", lat=23.7386, lng=90.3958),
        Stop(seq=3, name="Motijheel", lat=23.7330, lng=90.4172),
    ]
    r2 = Route(name="Unpriced shuttle")
    db.session.add_all([r1, r2])
    db.session.flush()

    b1 = Bus(identifier="B1", capacity=40, route_id=r1.id)
    b2 = Bus(identifier="B2", capacity=4, route_id=r2.id)
    db.session.add_all([b1, b2])
    db.session.flush()

    rider = User(username="rahim", first_name="Rahim", last_name="Uddin", role="rider")
    rider2 = User(username="karim", first_name="Karim", last_name="Ahmed", role="rider")
    driver = User(username="driver1", role="driver", assigned_bus_id=b1.id)
    supervisor = User(username="sup1", first_name="Sumi", last_name="Akter", role="supervisor",
                      assigned_bus_id=b1.id)
    admin = User(username="admin", role="admin")
    db.session.add_all([rider, rider2, driver, supervisor, admin])
    db.session.flush()

    c1 = Card(card_number="RC-00000001", user_id=rider.id, balance=Decimal("50.00"))
    c2 = Card(card_number="RC-00000002", user_id=rider2.id, balance=Decimal("5.00"))
    db.session.add_all([c1, c2])
    db.session.commit()

    return SimpleNamespace(
        route=r1.id, route_unpriced=r2.id, bus=b1.id, bus_unpriced=b2.id,
        stops=[s.id for s in r1.stops],
        rider=rider.id, rider2=rider2.id, driver=driver.id, supervisor=supervisor.id, admin=admin.id,
        card=c1.id, card_low=c2.id,
    )


@pytest.fixture()
def seed(app):
    return app.config["SEED"]


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth(app, seed):
    """auth("supervisor") -> Authorization header for the seeded user with that role."""
    def _headers(role: str, **extra) -> dict:
        with app.app_context():
            user = db.session.get(User, getattr(seed, role))
            token = issue_token(user)
        return {"Authorization": f"Bearer {token}", **extra}
    return _headers


@pytest.fixture()
def read(app):
    """Fresh reads straight from the database, outside any request."""
    class _Reader:
        def balance(self, card_number="RC-00000001") -> Decimal:
            with app.app_context():
                return db.session.execute(
                    select(Card.balance).where(Card.card_number == card_number)
                ).scalar_one()

        def card(self, card_number="RC-00000001") -> dict:
            with app.app_context():
                c = db.session.execute(select(Card).where(Card.card_number == card_number)).scalar_one()
                return {"balance": c.balance, "points": c.points, "co2_saved": c.co2_saved}

        def journeys(self, card_number="RC-00000001"):
            with app.app_context():
                rows = db.session.execute(
                    select(Journey).where(Journey.card_number == card_number).order_by(Journey.id)
                ).scalars().all()
                return [SimpleNamespace(**{c.name: getattr(j, c.name) for c in Journey.__table__.columns})
                        for j in rows]

        def transactions(self, card_id):
            with app.app_context():
                rows = db.session.execute(
                    select(CardTransaction).where(CardTransaction.card_id == card_id).order_by(CardTransaction.id)
                ).scalars().all()
                return [SimpleNamespace(direction=t.direction, transaction_type=t.transaction_type,
                                        amount=t.amount, running_balance=t.running_balance,
                                        ref_table=t.ref_table, ref_id=t.ref_id) for t in rows]

        def bookings(self, bus_id):
            with app.app_context():
                rows = db.session.execute(
                    select(Booking).where(Booking.bus_id == bus_id).order_by(Booking.id)
                ).scalars().all()
                return [SimpleNamespace(id=b.id, seat_no=b.seat_no, status=b.status, seat_hold=b.seat_hold,
                                        travel_date=b.travel_date, drop_stop=b.drop_stop,
                                        payment_status=b.payment_status) for b in rows]

    return _Reader()


# ── in-memory stores for the service-level property tests ────────────────────

@pytest.fixture()
def fake():
    f = FakeStores()
    route = f.add_route(base_fare="20", fare_per_km="1.5", distance_km="8")
    f.bus_id = f.add_bus("B1", route_id=route, capacity=40)
    f.unpriced_bus_id = f.add_bus("B2", route_id=f.add_route(base_fare=None, fare_per_km=None), capacity=4)
    f.stop_id = f.add_stop(route, "Shahbag")
    f.rider_id = f.add_user("Rahim Uddin")
    f.card_id = f.add_card("RC-00000001", f.rider_id, balance="50")
    f.rider2_id = f.add_user("Karim Ahmed")
    f.card2_id = f.add_card("RC-00000002", f.rider2_id, balance="5")
    return f
