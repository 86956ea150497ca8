"""
SQL-backed storage ports.

Services never touch `db.session` directly; they receive a `Stores` unit of
work and go through these ports. Every uniqueness guarantee the services rely
on (idempotency keys, one open journey per card and bus, one live hold per
seat) is a database constraint; the ports translate a violation into
`UniqueViolation(<guard>)` and leave rollback to `Stores.transaction()`.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import case, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.util import identity_key

from models.booking import Booking
from models.bus import Bus
from models.card import Card, CardTransaction
from models.idempotency import IdempotencyRecord
from models.journey import Journey
from models.manual_ticket import ManualTicket
from models.route import Stop
from services.errors import UniqueViolation

_log = logging.getLogger("stores")

# guard names carried by UniqueViolation
IDEMPOTENCY_GUARD = "idempotency"
OPEN_JOURNEY_GUARD = "open_journey"
SEAT_HOLD_GUARD = "seat_hold"


def _is_unique(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return "unique" in msg or "duplicate" in msg


def _expire_loaded(session, model, pk) -> None:
    """Bulk UPDATEs bypass the identity map; drop any stale copy we hold."""
    obj = session.identity_map.get(identity_key(model, pk))
    if obj is not None:
        session.expire(obj)


class SqlCardStore:
    def __init__(self, session):
        self.session = session

    def find_by_number(self, raw: Any) -> Optional[Card]:
        """Exact match first, then case-insensitive; callers persist card.card_number."""
        token = str(raw or "").strip()
        if not token:
            return None
        card = self.session.execute(
            select(Card).where(Card.card_number == token)
        ).scalars().first()
        if card:
            return card
        card = self.session.execute(
            select(Card).where(func.lower(Card.card_number) == token.lower())
        ).scalars().first()
        if card:
            _log.info("[cards] case-insensitive match %s -> %s", token, card.card_number)
        return card

    def get(self, card_id: int) -> Optional[Card]:
        return self.session.get(Card, card_id)

    def for_user(self, user_id: Optional[int]) -> Optional[Card]:
        if user_id is None:
            return None
        return self.session.execute(
            select(Card).where(Card.user_id == user_id)
        ).scalars().first()

    def registered(self) -> List[Card]:
        return list(self.session.execute(
            select(Card).order_by(Card.card_number.asc())
        ).scalars())


class SqlJourneyStore:
    def __init__(self, session):
        self.session = session

    def open_for(self, card_number: str, bus_id: int) -> Optional[Journey]:
        return self.session.execute(
            select(Journey)
            .where(
                Journey.card_number == card_number,
                Journey.bus_id == bus_id,
                Journey.open_slot.is_not(None),
            )
            .order_by(Journey.tap_in_time.desc())
            .limit(1)
        ).scalars().first()

    def start(self, **fields) -> Journey:
        j = Journey(open_slot=1, **fields)
        self.session.add(j)
        try:
            self.session.flush()
        except IntegrityError as e:
            if not _is_unique(e):
                raise
            raise UniqueViolation(OPEN_JOURNEY_GUARD)
        return j

    def close(self, journey_id: int, **fields) -> bool:
        """Conditional close: only the first caller to see the journey open wins."""
        res = self.session.execute(
            update(Journey)
            .where(Journey.id == journey_id, Journey.open_slot.is_not(None))
            .values(open_slot=None, **fields)
            .execution_options(synchronize_session=False)
        )
        _expire_loaded(self.session, Journey, journey_id)
        return res.rowcount == 1

    def last_used(self, card_number: str) -> Optional[dt.datetime]:
        row = self.session.execute(
            select(Journey.tap_in_time, Journey.tap_out_time)
            .where(Journey.card_number == card_number)
            .order_by(Journey.tap_in_time.desc())
            .limit(1)
        ).first()
        if not row:
            return None
        return row.tap_out_time or row.tap_in_time

    def recent(
        self,
        *,
        bus_id: Optional[int] = None,
        card_number: Optional[str] = None,
        since: Optional[dt.datetime] = None,
        until: Optional[dt.datetime] = None,
        limit: int = 500,
    ) -> List[Journey]:
        """Newest tap-ins first."""
        q = select(Journey)
        if bus_id is not None:
            q = q.where(Journey.bus_id == bus_id)
        if card_number is not None:
            q = q.where(Journey.card_number == card_number)
        if since is not None:
            q = q.where(Journey.tap_in_time >= since)
        if until is not None:
            q = q.where(Journey.tap_in_time <= until)
        q = q.order_by(Journey.tap_in_time.desc(), Journey.id.desc()).limit(limit)
        return list(self.session.execute(q).scalars())


class SqlLedgerStore:
    def __init__(self, session):
        self.session = session

    def balance_for_update(self, card_id: int) -> Optional[Decimal]:
        return self.session.execute(
            select(Card.balance).where(Card.id == card_id).with_for_update()
        ).scalar()

    def apply_delta(
        self,
        card_id: int,
        *,
        balance_delta: Decimal,
        points_delta: int = 0,
        co2_delta: Decimal = Decimal("0"),
        clamp: bool = True,
    ) -> Decimal:
        """
        Single-statement relative update; the new balance is clamped at zero
        when `clamp` is set. Returns the balance after the update.
        """
        new_balance = Card.balance + balance_delta
        if clamp:
            new_balance = case((new_balance < 0, Decimal("0.00")), else_=new_balance)
        self.session.execute(
            update(Card)
            .where(Card.id == card_id)
            .values(
                balance=new_balance,
                points=Card.points + int(points_delta),
                co2_saved=Card.co2_saved + co2_delta,
            )
            .execution_options(synchronize_session=False)
        )
        return self._balance(card_id)

    def debit_if_covered(self, card_id: int, amount: Decimal) -> Optional[Decimal]:
        """Deduct only when the balance covers it; None means insufficient funds."""
        res = self.session.execute(
            update(Card)
            .where(Card.id == card_id, Card.balance >= amount)
            .values(balance=Card.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            return None
        return self._balance(card_id)

    def set_balance(self, card_id: int, value: Decimal) -> Decimal:
        self.session.execute(
            update(Card)
            .where(Card.id == card_id)
            .values(balance=value)
            .execution_options(synchronize_session=False)
        )
        return self._balance(card_id)

    def record(self, **fields) -> CardTransaction:
        txn = CardTransaction(**fields)
        self.session.add(txn)
        self.session.flush()
        return txn

    def history(self, card_id: int, limit: int = 500) -> List[CardTransaction]:
        return list(self.session.execute(
            select(CardTransaction)
            .where(CardTransaction.card_id == card_id)
            .order_by(CardTransaction.id.desc())
            .limit(limit)
        ).scalars())

    def _balance(self, card_id: int) -> Decimal:
        _expire_loaded(self.session, Card, card_id)
        return self.session.execute(
            select(Card.balance).where(Card.id == card_id)
        ).scalar_one()


class SqlReservationStore:
    def __init__(self, session):
        self.session = session

    def insert(self, **fields) -> Booking:
        b = Booking(seat_hold=1, **fields)
        self.session.add(b)
        try:
            self.session.flush()
        except IntegrityError as e:
            if not _is_unique(e):
                raise
            raise UniqueViolation(SEAT_HOLD_GUARD)
        return b

    def get(self, booking_id: int) -> Optional[Booking]:
        return self.session.get(Booking, booking_id)

    def release(self, booking_id: int, status: str, **fields) -> bool:
        res = self.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.seat_hold.is_not(None))
            .values(status=status, seat_hold=None, **fields)
            .execution_options(synchronize_session=False)
        )
        _expire_loaded(self.session, Booking, booking_id)
        return res.rowcount == 1

    def release_matching(
        self,
        bus_id: int,
        *,
        status: str,
        stop_name: Optional[str] = None,
        travel_date: Optional[dt.date] = None,
        before: Optional[dt.date] = None,
    ) -> List[int]:
        conds = [Booking.seat_hold.is_not(None)]
        if bus_id is not None:
            conds.append(Booking.bus_id == bus_id)
        if stop_name is not None:
            conds.append(func.lower(Booking.drop_stop) == stop_name.strip().lower())
        if travel_date is not None:
            conds.append(Booking.travel_date == travel_date)
        if before is not None:
            conds.append(Booking.travel_date < before)
        ids = list(self.session.execute(select(Booking.id).where(*conds)).scalars())
        if ids:
            self.session.execute(
                update(Booking)
                .where(Booking.id.in_(ids), Booking.seat_hold.is_not(None))
                .values(status=status, seat_hold=None)
                .execution_options(synchronize_session=False)
            )
            for booking_id in ids:
                _expire_loaded(self.session, Booking, booking_id)
        return ids

    def seat_map(self, bus_id: int, travel_date: dt.date) -> List[Booking]:
        return list(self.session.execute(
            select(Booking)
            .where(
                Booking.bus_id == bus_id,
                Booking.travel_date == travel_date,
                Booking.seat_hold.is_not(None),
            )
            .order_by(Booking.seat_no.asc())
        ).scalars())


class SqlIdempotencyStore:
    def __init__(self, session):
        self.session = session

    def lookup(self, event_type: str, offline_id: str) -> Optional[Dict[str, Any]]:
        row = self.session.execute(
            select(IdempotencyRecord.ref_id, IdempotencyRecord.outcome).where(
                IdempotencyRecord.event_type == event_type,
                IdempotencyRecord.offline_id == offline_id,
            )
        ).first()
        if not row:
            return None
        return {"ref_id": row.ref_id, "outcome": row.outcome or {}}

    def claim(self, event_type: str, offline_id: str) -> None:
        try:
            self.session.execute(
                insert(IdempotencyRecord).values(event_type=event_type, offline_id=offline_id)
            )
        except IntegrityError as e:
            if not _is_unique(e):
                raise
            raise UniqueViolation(IDEMPOTENCY_GUARD)

    def settle(self, event_type: str, offline_id: str, *, ref_id: Optional[int], outcome: Dict[str, Any]) -> None:
        self.session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.event_type == event_type,
                IdempotencyRecord.offline_id == offline_id,
            )
            .values(ref_id=ref_id, outcome=outcome)
            .execution_options(synchronize_session=False)
        )


class SqlTransitStore:
    """Read side of the collaborator tables (buses, routes, stops) plus manual tickets."""

    def __init__(self, session):
        self.session = session

    def resolve_bus(self, raw: Any) -> Optional[Bus]:
        """
        Accepts the bus identifier ("B1", case-insensitive) or the numeric id.
        """
        ident = str(raw if raw is not None else "").strip()
        if not ident:
            return None
        bus = self.session.execute(
            select(Bus).where(func.lower(Bus.identifier) == ident.lower())
        ).scalars().first()
        if bus:
            return bus
        if re.fullmatch(r"\d{1,9}", ident):
            return self.session.get(Bus, int(ident))
        return None

    def fare_config(self, bus: Bus) -> Optional[Tuple[Decimal, Decimal]]:
        route = bus.route
        if route is None or route.base_fare is None or route.fare_per_km is None:
            return None
        return Decimal(route.base_fare), Decimal(route.fare_per_km)

    def route_distance(self, bus: Bus) -> Optional[Decimal]:
        route = bus.route
        if route is None or route.distance_km is None:
            return None
        return Decimal(route.distance_km)

    def stop(self, stop_id: Any) -> Optional[Stop]:
        try:
            return self.session.get(Stop, int(stop_id))
        except (TypeError, ValueError):
            return None

    def create_ticket(self, **fields) -> ManualTicket:
        t = ManualTicket(**fields)
        self.session.add(t)
        self.session.flush()
        return t

    def tickets(
        self,
        *,
        bus_id: Optional[int] = None,
        since: Optional[dt.datetime] = None,
        until: Optional[dt.datetime] = None,
        limit: int = 500,
    ) -> List[ManualTicket]:
        q = select(ManualTicket)
        if bus_id is not None:
            q = q.where(ManualTicket.bus_id == bus_id)
        if since is not None:
            q = q.where(ManualTicket.issued_at >= since)
        if until is not None:
            q = q.where(ManualTicket.issued_at <= until)
        q = q.order_by(ManualTicket.issued_at.desc(), ManualTicket.id.desc()).limit(limit)
        return list(self.session.execute(q).scalars())


class Stores:
    """Unit of work over one SQLAlchemy session."""

    def __init__(self, session):
        self.session = session
        self.cards = SqlCardStore(session)
        self.journeys = SqlJourneyStore(session)
        self.ledger = SqlLedgerStore(session)
        self.reservations = SqlReservationStore(session)
        self.idempotency = SqlIdempotencyStore(session)
        self.transit = SqlTransitStore(session)

    @contextmanager
    def transaction(self) -> Iterator["Stores"]:
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def rollback(self) -> None:
        self.session.rollback()
