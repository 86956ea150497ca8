from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from services.errors import (
    AlreadyActive,
    BusNotFound,
    CardNotFound,
    InsufficientFunds,
    InvalidRequest,
    NoActiveJourney,
    SeatTaken,
    StopNotFound,
)
from services.fare_meter import FareMeter
from tests.conftest import ORIGIN, point_km_north


def _meter(fake):
    return FareMeter(fake)


def test_tap_in_then_tap_out_five_km(fake):
    m = _meter(fake)
    r = m.tap_in(card_id="RC-00000001", bus_id="B1", location=ORIGIN,
                 timestamp="2025-01-01T08:00:00Z", offline_id="in-1")
    assert r.status == "created"
    assert r.data["user_name"] == "Rahim Uddin"
    assert r.data["balance"] == 50.0
    assert len(fake.open_journeys()) == 1

    out = m.tap_out(card_id="RC-00000001", bus_id="B1", location=point_km_north(5),
                    timestamp="2025-01-01T08:25:00Z", offline_id="out-1")
    assert out.data["fare"] == 27.5
    assert out.data["new_balance"] == 22.5
    assert out.data["co2_saved"] == 0.6
    assert out.data["points_earned"] == 50
    assert out.data["journey_duration"] == "25 minutes"

    card = fake.card(fake.card_id)
    assert card.balance == Decimal("22.50")
    assert card.points == 50
    assert card.co2_saved == Decimal("0.60")
    assert fake.open_journeys() == []


def test_card_lookup_is_case_insensitive_and_canonical(fake):
    r = _meter(fake).tap_in(card_id="rc-00000001", bus_id="b1")
    assert r.data["card_id"] == "RC-00000001"
    assert fake.open_journeys("RC-00000001")


def test_tap_in_rejections(fake):
    m = _meter(fake)
    with pytest.raises(CardNotFound):
        m.tap_in(card_id="RC-404", bus_id="B1")
    with pytest.raises(BusNotFound):
        m.tap_in(card_id="RC-00000001", bus_id="B99")
    with pytest.raises(InsufficientFunds) as ei:
        m.tap_in(card_id="RC-00000002", bus_id="B1")
    assert ei.value.extra == {"current_balance": 5.0, "minimum_required": 10.0}
    with pytest.raises(InvalidRequest):
        m.tap_in(card_id="", bus_id="B1")
    assert fake.open_journeys() == []
    assert fake.tables.idem == {}


def test_second_tap_in_on_same_bus_is_already_active(fake):
    m = _meter(fake)
    first = m.tap_in(card_id="RC-00000001", bus_id="B1")
    with pytest.raises(AlreadyActive) as ei:
        m.tap_in(card_id="RC-00000001", bus_id="B1")
    assert ei.value.extra["active_tap_id"] == first.data["tap_id"]


def test_same_card_may_ride_two_buses(fake):
    m = _meter(fake)
    m.tap_in(card_id="RC-00000001", bus_id="B1")
    m.tap_in(card_id="RC-00000001", bus_id="B2")
    assert len(fake.open_journeys("RC-00000001")) == 2


def test_tap_out_without_journey(fake):
    m = _meter(fake)
    with pytest.raises(NoActiveJourney):
        m.tap_out(card_id="RC-00000001", bus_id="B1")
    with pytest.raises(NoActiveJourney):
        m.tap_out(card_id="RC-404", bus_id="B1")


def test_missing_location_uses_fallback_distance(fake):
    m = _meter(fake)
    m.tap_in(card_id="RC-00000001", bus_id="B1", location=ORIGIN)
    out = m.tap_out(card_id="RC-00000001", bus_id="B1")
    assert out.data["distance_km"] == 2.5
    assert out.data["fare"] == 23.75


def test_unpriced_route_falls_back_to_default_fare(fake):
    m = _meter(fake)
    m.tap_in(card_id="RC-00000001", bus_id="B2", location=ORIGIN)
    out = m.tap_out(card_id="RC-00000001", bus_id="B2", location=point_km_north(2))
    assert out.data["fare"] == 23.0


def test_fare_above_balance_clamps_at_zero(fake):
    m = _meter(fake)
    m.tap_in(card_id="RC-00000001", bus_id="B1", location=ORIGIN)
    out = m.tap_out(card_id="RC-00000001", bus_id="B1", location=point_km_north(40))
    assert out.data["fare"] == 80.0
    assert out.data["amount_charged"] == 50.0
    assert out.data["new_balance"] == 0.0
    txn = fake.tables.txns[-1]
    assert (txn.direction, txn.transaction_type, txn.amount) == ("debit", "fare", Decimal("50.00"))


def test_conservation_balance_drops_by_exactly_the_fare(fake):
    m = _meter(fake)
    before = fake.card(fake.card_id).balance
    m.tap_in(card_id="RC-00000001", bus_id="B1", location=ORIGIN, offline_id="c-in")
    out = m.tap_out(card_id="RC-00000001", bus_id="B1", location=point_km_north(3.337), offline_id="c-out")
    # replays must not drift the balance
    m.tap_out(card_id="RC-00000001", bus_id="B1", location=point_km_north(9), offline_id="c-out")
    after = fake.card(fake.card_id).balance
    assert before - after == Decimal(str(out.data["fare"]))
    assert out.data["fare"] == float(Decimal("20") + Decimal("3.34") * Decimal("1.5"))


def test_concurrent_tap_ins_open_at_most_one_journey(fake):
    m = _meter(fake)
    outcomes = []

    def worker(i):
        try:
            outcomes.append(m.tap_in(card_id="RC-00000001", bus_id="B1", offline_id=f"race-{i}").status)
        except AlreadyActive:
            outcomes.append("already_active")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("already_active") == 7
    assert len(fake.open_journeys("RC-00000001")) == 1


def test_concurrent_tap_outs_charge_once(fake):
    m = _meter(fake)
    m.tap_in(card_id="RC-00000001", bus_id="B1")
    outcomes = []

    def worker(i):
        try:
            outcomes.append(m.tap_out(card_id="RC-00000001", bus_id="B1", offline_id=f"out-{i}").status)
        except NoActiveJourney:
            outcomes.append("none")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("created") == 1
    assert fake.card(fake.card_id).balance == Decimal("26.25")
    assert len([t for t in fake.tables.txns if t.transaction_type == "fare"]) == 1


# ── manual tickets ───────────────────────────────────────────────────────────

def test_cash_manual_ticket(fake):
    r = _meter(fake).issue_manual_ticket(bus_id="B1", fare="60", passenger_count=3, offline_id="mt-1")
    assert r.data["total_fare"] == 60.0
    assert r.data["passenger_count"] == 3
    assert r.data["payment_method"] == "cash"
    assert "booking" not in r.data
    assert len(fake.tables.tickets) == 1
    assert fake.tables.txns == []


def test_manual_ticket_paid_by_card_with_walk_up_seat(fake):
    r = _meter(fake).issue_manual_ticket(
        bus_id="B1", fare=30, payment_method="rapid_card", card_id="RC-00000001",
        seat_number=7, drop_stop_id=fake.stop_id,
    )
    assert r.data["new_balance"] == 20.0
    assert r.data["booking"]["status"] == "occupied"
    assert r.data["booking"]["drop_stop"] == "Shahbag"
    assert fake.card(fake.card_id).balance == Decimal("20.00")


def test_manual_ticket_failures_leave_nothing_behind(fake):
    m = _meter(fake)
    m.issue_manual_ticket(bus_id="B1", fare=20, seat_number=7, timestamp="2025-01-01T09:00:00Z")

    with pytest.raises(SeatTaken):
        m.issue_manual_ticket(bus_id="B1", fare=20, seat_number=7, timestamp="2025-01-01T10:00:00Z")
    with pytest.raises(InsufficientFunds):
        m.issue_manual_ticket(bus_id="B1", fare=10, payment_method="rapid_card", card_id="RC-00000002")
    with pytest.raises(StopNotFound):
        m.issue_manual_ticket(bus_id="B1", fare=10, drop_stop_id=9999)
    with pytest.raises(InvalidRequest):
        m.issue_manual_ticket(bus_id="B1", fare=10, passenger_count=0)
    with pytest.raises(InvalidRequest):
        m.issue_manual_ticket(bus_id="B1", fare=-1)
    with pytest.raises(InvalidRequest):
        m.issue_manual_ticket(bus_id="B1", fare=10, payment_method="rapid_card")

    assert len(fake.tables.tickets) == 1
    assert fake.card(fake.card2_id).balance == Decimal("5.00")


def test_card_status_reports_last_use(fake):
    m = _meter(fake)
    assert m.card_status("RC-00000001")["last_used"] is None
    m.tap_in(card_id="RC-00000001", bus_id="B1", timestamp="2025-01-01T08:00:00Z")
    status = m.card_status("rc-00000001")
    assert status["card_id"] == "RC-00000001"
    assert status["passenger_name"] == "Rahim Uddin"
    assert status["last_used"] == "2025-01-01T08:00:00Z"
    with pytest.raises(CardNotFound):
        m.card_status("nope")
