# services/seats.py
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from models.booking import HELD_STATUSES
from services import ledger
from services.errors import (
    BookingClosed,
    BookingNotFound,
    BusNotFound,
    CardNotFound,
    Forbidden,
    InvalidRequest,
    SeatTaken,
    UniqueViolation,
)
from services.idempotency import BOOKING, EventResult, event_key, run_once
from services.settings import FareSettings
from services.stores import SEAT_HOLD_GUARD
from utils.fare import compute_fare, to_money
from utils.timeutil import iso_utc, parse_travel_date

log = logging.getLogger("seats")

STAFF_ROLES = ("driver", "supervisor", "admin")


def seat_number(raw: Any, capacity: int) -> int:
    if isinstance(raw, bool):
        raise InvalidRequest("seat_no must be an integer")
    try:
        seat = int(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidRequest("seat_no must be an integer")
    if seat < 1 or seat > capacity:
        raise InvalidRequest(f"seat_no must be between 1 and {capacity}")
    return seat


def hold_seat(stores, *, bus, seat_no: Any, travel_date: dt.date, status: str, default_capacity: int, **fields):
    """Insert a live hold for (bus, date, seat); the unique key on live holds decides."""
    seat = seat_number(seat_no, bus.capacity or default_capacity)
    try:
        return stores.reservations.insert(
            bus_id=bus.id,
            seat_no=seat,
            travel_date=travel_date,
            status=status,
            **fields,
        )
    except UniqueViolation as e:
        if e.constraint == SEAT_HOLD_GUARD:
            raise SeatTaken(seat_no=seat)
        raise


def booking_json(b) -> Dict[str, Any]:
    return {
        "id": b.id,
        "bus_id": b.bus_id,
        "route_id": b.route_id,
        "seat_no": b.seat_no,
        "travel_date": b.travel_date.isoformat() if b.travel_date else None,
        "user_id": b.user_id,
        "ticket_id": b.ticket_id,
        "status": b.status,
        "fare": float(to_money(b.fare or 0)),
        "payment_method": b.payment_method,
        "payment_status": b.payment_status,
        "drop_stop": b.drop_stop,
        "created_at": iso_utc(b.created_at),
    }


class SeatReservations:
    """Seat booking, cancellation and release for one unit of work."""

    def __init__(self, stores, settings: Optional[FareSettings] = None):
        self.stores = stores
        self.settings = settings or FareSettings()

    def _bus(self, raw):
        bus = self.stores.transit.resolve_bus(raw)
        if bus is None:
            raise BusNotFound()
        return bus

    def _default_fare(self, bus) -> Decimal:
        cfg = self.stores.transit.fare_config(bus)
        base, per_km = cfg if cfg is not None else (
            self.settings.default_base_fare,
            self.settings.default_fare_per_km,
        )
        distance = self.stores.transit.route_distance(bus) or Decimal("0")
        return compute_fare(base, per_km, distance)

    # ------------------------------------------------------------------
    def book(
        self,
        *,
        bus_id: Any,
        traveler_id: Optional[int],
        seat_no: Any,
        travel_date: Any = None,
        route_id: Optional[int] = None,
        fare: Any = None,
        payment_method: Optional[str] = None,
        drop_stop: Optional[str] = None,
        offline_id: Any = None,
        actor_id: Optional[int] = None,
    ) -> EventResult:
        key = event_key(offline_id, "bk")
        method = (payment_method or "cash").strip().lower()

        def apply():
            bus = self._bus(bus_id)
            date = parse_travel_date(travel_date, zone=self.settings.zone)

            if fare is None or fare == "":
                amount = self._default_fare(bus)
            else:
                try:
                    amount = to_money(fare)
                except (ArithmeticError, TypeError, ValueError):
                    raise InvalidRequest("fare must be a number")
                if amount < 0:
                    raise InvalidRequest("fare must not be negative")

            card = None
            if method == "rapid_card":
                card = self.stores.cards.for_user(traveler_id)
                if card is None:
                    raise CardNotFound()
            paid = card is not None and amount > 0

            booking = hold_seat(
                self.stores,
                bus=bus,
                seat_no=seat_no,
                travel_date=date,
                status="confirmed",
                default_capacity=self.settings.default_bus_capacity,
                route_id=route_id or bus.route_id,
                user_id=traveler_id,
                issued_by=actor_id,
                fare=amount,
                payment_method=method,
                payment_status="paid" if paid else "pending",
                drop_stop=(drop_stop or "").strip() or None,
                card_id=card.id if card else None,
            )

            outcome = booking_json(booking)
            outcome["bus_identifier"] = bus.identifier
            if paid:
                new_balance = ledger.charge(
                    self.stores,
                    card_id=card.id,
                    amount=amount,
                    txn_type="booking",
                    ref_table="bookings",
                    ref_id=booking.id,
                    description=f"Seat {booking.seat_no} on {bus.identifier} for {date.isoformat()}",
                    actor_id=actor_id,
                )
                outcome["new_balance"] = float(new_balance)
            log.info("[seats] booked bus=%s date=%s seat=%s booking=%s", bus.id, date, booking.seat_no, booking.id)
            return booking.id, outcome

        return run_once(self.stores, BOOKING, key, apply)

    def cancel(self, booking_id: int, *, actor_id: Optional[int], actor_role: str) -> Dict[str, Any]:
        with self.stores.transaction():
            b = self.stores.reservations.get(booking_id)
            if b is None:
                raise BookingNotFound()
            if actor_role not in STAFF_ROLES and b.user_id != actor_id:
                raise Forbidden("Not your booking")
            if b.seat_hold is None or b.status not in HELD_STATUSES:
                raise BookingClosed()

            refund = (
                b.card_id is not None
                and b.payment_status == "paid"
                and to_money(b.fare or 0) > 0
            )
            card_id, amount, seat, bus_id = b.card_id, to_money(b.fare or 0), b.seat_no, b.bus_id
            travel_date = b.travel_date

            released = self.stores.reservations.release(
                booking_id,
                "cancelled",
                payment_status="refunded" if refund else b.payment_status,
            )
            if not released:
                raise BookingClosed()

            new_balance = None
            if refund:
                new_balance = ledger.credit(
                    self.stores,
                    card_id=card_id,
                    amount=amount,
                    txn_type="refund",
                    ref_table="bookings",
                    ref_id=booking_id,
                    description=f"Refund for cancelled seat {seat}",
                    actor_id=actor_id,
                )

        log.info("[seats] cancelled booking=%s bus=%s seat=%s refund=%s", booking_id, bus_id, seat, refund)
        out = {
            "id": booking_id,
            "bus_id": bus_id,
            "seat_no": seat,
            "travel_date": travel_date.isoformat(),
            "status": "cancelled",
            "refunded": float(amount) if refund else 0.0,
        }
        if new_balance is not None:
            out["new_balance"] = float(new_balance)
        return out

    def release_at_stop(self, *, bus_id: Any, stop_name: Any, travel_date: Any = None) -> Dict[str, Any]:
        """Stop-arrival trigger: held bookings dropping at this stop are completed."""
        name = str(stop_name or "").strip()
        if not name:
            raise InvalidRequest("stop_name is required")
        with self.stores.transaction():
            bus = self._bus(bus_id)
            date = parse_travel_date(travel_date, zone=self.settings.zone)
            ids = self.stores.reservations.release_matching(
                bus.id, status="completed", stop_name=name, travel_date=date
            )
        log.info("[seats] released %d booking(s) at %r on bus=%s", len(ids), name, bus.id)
        return {"bus_id": bus.id, "stop_name": name, "travel_date": date.isoformat(),
                "released": len(ids), "booking_ids": ids}

    def complete_bus(self, *, bus_id: Any, travel_date: Any = None) -> Dict[str, Any]:
        """Trip-completion trigger: every held booking on the bus for the date is completed."""
        with self.stores.transaction():
            bus = self._bus(bus_id)
            date = parse_travel_date(travel_date, zone=self.settings.zone)
            ids = self.stores.reservations.release_matching(bus.id, status="completed", travel_date=date)
        log.info("[seats] completed %d booking(s) on bus=%s date=%s", len(ids), bus.id, date)
        return {"bus_id": bus.id, "travel_date": date.isoformat(), "completed": len(ids), "booking_ids": ids}

    def close_before(self, before: dt.date) -> List[int]:
        with self.stores.transaction():
            ids = self.stores.reservations.release_matching(None, status="completed", before=before)
        log.info("[seats] closed %d stale booking(s) before %s", len(ids), before)
        return ids

    def seat_map(self, *, bus_id: Any, travel_date: Any = None) -> Dict[str, Any]:
        bus = self._bus(bus_id)
        date = parse_travel_date(travel_date, zone=self.settings.zone)
        capacity = bus.capacity or self.settings.default_bus_capacity
        held = self.stores.reservations.seat_map(bus.id, date)
        taken = {b.seat_no for b in held}
        return {
            "bus_id": bus.id,
            "bus_identifier": bus.identifier,
            "travel_date": date.isoformat(),
            "capacity": capacity,
            "bookings": [booking_json(b) for b in held],
            "available": [n for n in range(1, capacity + 1) if n not in taken],
        }
