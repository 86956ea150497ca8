"""
In-memory storage ports with the same contract as services/stores.py.

Transactions are serialized on one re-entrant lock and roll back by restoring
a deep copy of the tables, so the uniqueness guards behave like the database
constraints they stand in for.
"""
from __future__ import annotations

import copy
import datetime as dt
import threading
from contextlib import contextmanager
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List

from services.errors import UniqueViolation
from services.stores import IDEMPOTENCY_GUARD, OPEN_JOURNEY_GUARD, SEAT_HOLD_GUARD

ZERO = Decimal("0.00")


class Tables:
    def __init__(self):
        self.users: Dict[int, Any] = {}
        self.routes: Dict[int, Any] = {}
        self.stops: Dict[int, Any] = {}
        self.buses: Dict[int, Any] = {}
        self.cards: Dict[int, Any] = {}
        self.journeys: Dict[int, Any] = {}
        self.bookings: Dict[int, Any] = {}
        self.tickets: Dict[int, Any] = {}
        self.txns: List[Any] = []
        self.idem: Dict[tuple, Dict[str, Any]] = {}
        self.next_id = 1

    def new_id(self) -> int:
        n = self.next_id
        self.next_id += 1
        return n


class _Port:
    def __init__(self, root: "FakeStores"):
        self.root = root

    @property
    def t(self) -> Tables:
        return self.root.tables


class FakeCardStore(_Port):
    def find_by_number(self, raw):
        token = str(raw or "").strip()
        if not token:
            return None
        with self.root.lock:
            for c in self.t.cards.values():
                if c.card_number == token:
                    return c
            for c in self.t.cards.values():
                if c.card_number.lower() == token.lower():
                    return c
        return None

    def get(self, card_id):
        return self.t.cards.get(card_id)

    def for_user(self, user_id):
        with self.root.lock:
            for c in self.t.cards.values():
                if c.user_id == user_id:
                    return c
        return None

    def registered(self):
        with self.root.lock:
            return sorted(self.t.cards.values(), key=lambda c: c.card_number)


class FakeJourneyStore(_Port):
    def open_for(self, card_number, bus_id):
        with self.root.lock:
            for j in self.t.journeys.values():
                if j.card_number == card_number and j.bus_id == bus_id and j.open_slot is not None:
                    return j
        return None

    def start(self, **fields):
        if self.open_for(fields["card_number"], fields["bus_id"]) is not None:
            raise UniqueViolation(OPEN_JOURNEY_GUARD)
        j = SimpleNamespace(
            id=self.t.new_id(), open_slot=1, tap_out_time=None, tap_out_lat=None, tap_out_lng=None,
            fare=None, distance_km=None, co2_saved=None, points_earned=None, tap_out_offline_id=None,
            supervisor_id=None, tap_in_lat=None, tap_in_lng=None, tap_in_offline_id=None,
        )
        j.__dict__.update(fields)
        self.t.journeys[j.id] = j
        return j

    def close(self, journey_id, **fields):
        j = self.t.journeys.get(journey_id)
        if j is None or j.open_slot is None:
            return False
        j.__dict__.update(fields)
        j.open_slot = None
        return True

    def last_used(self, card_number):
        with self.root.lock:
            mine = [j for j in self.t.journeys.values() if j.card_number == card_number]
        if not mine:
            return None
        last = max(mine, key=lambda j: j.tap_in_time)
        return last.tap_out_time or last.tap_in_time


class FakeLedgerStore(_Port):
    def balance_for_update(self, card_id):
        c = self.t.cards.get(card_id)
        return None if c is None else c.balance

    def apply_delta(self, card_id, *, balance_delta, points_delta=0, co2_delta=ZERO, clamp=True):
        c = self.t.cards[card_id]
        new_balance = c.balance + balance_delta
        if clamp and new_balance < 0:
            new_balance = ZERO
        c.balance = new_balance
        c.points += int(points_delta)
        c.co2_saved += co2_delta
        return c.balance

    def debit_if_covered(self, card_id, amount):
        c = self.t.cards[card_id]
        if c.balance < amount:
            return None
        c.balance -= amount
        return c.balance

    def set_balance(self, card_id, value):
        c = self.t.cards[card_id]
        c.balance = value
        return c.balance

    def record(self, **fields):
        txn = SimpleNamespace(id=self.t.new_id(), **fields)
        self.t.txns.append(txn)
        return txn


class FakeReservationStore(_Port):
    def _held(self, bus_id, travel_date, seat_no):
        with self.root.lock:
            for b in self.t.bookings.values():
                if (b.bus_id, b.travel_date, b.seat_no) == (bus_id, travel_date, seat_no) and b.seat_hold is not None:
                    return b
        return None

    def insert(self, **fields):
        if self._held(fields["bus_id"], fields["travel_date"], fields["seat_no"]) is not None:
            raise UniqueViolation(SEAT_HOLD_GUARD)
        b = SimpleNamespace(
            id=self.t.new_id(), seat_hold=1, route_id=None, user_id=None, issued_by=None, ticket_id=None,
            fare=ZERO, payment_method=None, payment_status=None, drop_stop=None, card_id=None,
            created_at=dt.datetime(2025, 1, 1),
        )
        b.__dict__.update(fields)
        self.t.bookings[b.id] = b
        return b

    def get(self, booking_id):
        return self.t.bookings.get(booking_id)

    def release(self, booking_id, status, **fields):
        b = self.t.bookings.get(booking_id)
        if b is None or b.seat_hold is None:
            return False
        b.__dict__.update(fields)
        b.status = status
        b.seat_hold = None
        return True

    def release_matching(self, bus_id, *, status, stop_name=None, travel_date=None, before=None):
        ids = []
        for b in self.t.bookings.values():
            if b.seat_hold is None:
                continue
            if bus_id is not None and b.bus_id != bus_id:
                continue
            if stop_name is not None and (b.drop_stop or "").lower() != stop_name.strip().lower():
                continue
            if travel_date is not None and b.travel_date != travel_date:
                continue
            if before is not None and not b.travel_date < before:
                continue
            b.status = status
            b.seat_hold = None
            ids.append(b.id)
        return ids

    def seat_map(self, bus_id, travel_date):
        with self.root.lock:
            rows = [b for b in self.t.bookings.values()
                    if b.bus_id == bus_id and b.travel_date == travel_date and b.seat_hold is not None]
        return sorted(rows, key=lambda b: b.seat_no)


class FakeIdempotencyStore(_Port):
    def lookup(self, event_type, offline_id):
        with self.root.lock:
            rec = self.t.idem.get((event_type, offline_id))
            return copy.deepcopy(rec) if rec is not None else None

    def claim(self, event_type, offline_id):
        if (event_type, offline_id) in self.t.idem:
            raise UniqueViolation(IDEMPOTENCY_GUARD)
        self.t.idem[(event_type, offline_id)] = {"ref_id": None, "outcome": {}}

    def settle(self, event_type, offline_id, *, ref_id, outcome):
        self.t.idem[(event_type, offline_id)] = {"ref_id": ref_id, "outcome": copy.deepcopy(outcome)}


class FakeTransitStore(_Port):
    def resolve_bus(self, raw):
        ident = str(raw if raw is not None else "").strip()
        if not ident:
            return None
        for b in self.t.buses.values():
            if b.identifier.lower() == ident.lower():
                return b
        if ident.isdigit():
            return self.t.buses.get(int(ident))
        return None

    def fare_config(self, bus):
        r = bus.route
        if r is None or r.base_fare is None or r.fare_per_km is None:
            return None
        return Decimal(r.base_fare), Decimal(r.fare_per_km)

    def route_distance(self, bus):
        r = bus.route
        if r is None or r.distance_km is None:
            return None
        return Decimal(r.distance_km)

    def stop(self, stop_id):
        try:
            return self.t.stops.get(int(stop_id))
        except (TypeError, ValueError):
            return None

    def create_ticket(self, **fields):
        t = SimpleNamespace(id=self.t.new_id(), **fields)
        self.t.tickets[t.id] = t
        return t


class FakeStores:
    def __init__(self):
        self.lock = threading.RLock()
        self.tables = Tables()
        self.cards = FakeCardStore(self)
        self.journeys = FakeJourneyStore(self)
        self.ledger = FakeLedgerStore(self)
        self.reservations = FakeReservationStore(self)
        self.idempotency = FakeIdempotencyStore(self)
        self.transit = FakeTransitStore(self)

    @contextmanager
    def transaction(self):
        with self.lock:
            snapshot = copy.deepcopy(self.tables)
            try:
                yield self
            except Exception:
                self.tables = snapshot
                raise

    def rollback(self):
        pass

    # ── seeding helpers ─────────────────────────────────────────────────────
    def add_user(self, name="Rider", role="rider"):
        u = SimpleNamespace(id=self.tables.new_id(), name=name, role=role)
        self.tables.users[u.id] = u
        return u.id

    def add_route(self, base_fare="20", fare_per_km="1.5", distance_km=None):
        r = SimpleNamespace(
            id=self.tables.new_id(),
            base_fare=None if base_fare is None else Decimal(base_fare),
            fare_per_km=None if fare_per_km is None else Decimal(fare_per_km),
            distance_km=None if distance_km is None else Decimal(distance_km),
        )
        self.tables.routes[r.id] = r
        return r.id

    def add_bus(self, identifier="B1", route_id=None, capacity=40):
        b = SimpleNamespace(
            id=self.tables.new_id(),
            identifier=identifier,
            capacity=capacity,
            route_id=route_id,
            route=self.tables.routes.get(route_id),
        )
        self.tables.buses[b.id] = b
        return b.id

    def add_stop(self, route_id, name, seq=1):
        s = SimpleNamespace(id=self.tables.new_id(), route_id=route_id, name=name, seq=seq)
        self.tables.stops[s.id] = s
        return s.id

    def add_card(self, number, user_id, balance="0"):
        c = SimpleNamespace(
            id=self.tables.new_id(),
            card_number=number,
            user_id=user_id,
            balance=Decimal(balance).quantize(Decimal("0.01")),
            points=0,
            co2_saved=ZERO,
            status="active",
            holder_name=self.tables.users[user_id].name,
            created_at=None,
        )
        self.tables.cards[c.id] = c
        return c.id

    # ── read helpers for assertions ─────────────────────────────────────────
    def card(self, card_id):
        return self.tables.cards[card_id]

    def open_journeys(self, card_number=None):
        return [j for j in self.tables.journeys.values()
                if j.open_slot is not None and (card_number is None or j.card_number == card_number)]

    def held_bookings(self):
        return [b for b in self.tables.bookings.values() if b.seat_hold is not None]
