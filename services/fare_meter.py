# services/fare_meter.py
"""
Tap-in / tap-out journey metering and manual ticket issuance.

A journey is keyed by (card, bus) and moves NoActiveJourney -> TappedIn ->
Closed. Each transition is one storage transaction that also writes the
event's idempotency record, so replays from offline devices are answered
from the stored outcome without touching the card again.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from services import ledger
from services.errors import (
    AlreadyActive,
    BusNotFound,
    CardNotFound,
    InsufficientFunds,
    InvalidRequest,
    NoActiveJourney,
    StopNotFound,
    UniqueViolation,
)
from services.idempotency import (
    MANUAL_TICKET,
    TAP_IN,
    TAP_OUT,
    EventResult,
    event_key,
    run_once,
)
from services.seats import booking_json, hold_seat
from services.settings import FareSettings
from services.stores import OPEN_JOURNEY_GUARD
from utils.fare import quote_journey, to_money
from utils.geo import Coordinate, distance_between, normalize_location
from utils.timeutil import duration_minutes, iso_utc, local_date, parse_event_time

log = logging.getLogger("fare_meter")


def _passenger_count(raw: Any) -> int:
    if raw is None or raw == "":
        return 1
    if isinstance(raw, bool):
        raise InvalidRequest("passenger_count must be an integer")
    try:
        n = int(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidRequest("passenger_count must be an integer")
    if n < 1:
        raise InvalidRequest("passenger_count must be at least 1")
    return n


def _ticket_fare(raw: Any) -> Decimal:
    if raw is None or raw == "" or isinstance(raw, bool):
        raise InvalidRequest("fare is required")
    try:
        fare = to_money(raw)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidRequest("fare must be a number")
    if fare < 0:
        raise InvalidRequest("fare must not be negative")
    return fare


class FareMeter:
    def __init__(self, stores, settings: Optional[FareSettings] = None):
        self.stores = stores
        self.settings = settings or FareSettings()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def _card(self, raw):
        card = self.stores.cards.find_by_number(raw)
        if card is None:
            raise CardNotFound()
        return card

    def _bus(self, raw):
        bus = self.stores.transit.resolve_bus(raw)
        if bus is None:
            raise BusNotFound()
        return bus

    def _fare_config(self, bus):
        cfg = self.stores.transit.fare_config(bus)
        if cfg is None:
            log.info("[fare] bus=%s has no route fare config; using defaults", bus.id)
            return self.settings.default_base_fare, self.settings.default_fare_per_km
        return cfg

    # ------------------------------------------------------------------
    # tap-in
    # ------------------------------------------------------------------
    def tap_in(
        self,
        *,
        card_id: Any,
        bus_id: Any,
        location: Any = None,
        timestamp: Any = None,
        offline_id: Any = None,
        operator_id: Optional[int] = None,
    ) -> EventResult:
        if not card_id or not bus_id:
            raise InvalidRequest("card_id and bus_id are required")
        key = event_key(offline_id, "tapin")

        def apply():
            at = parse_event_time(timestamp)
            where = normalize_location(location)
            card = self._card(card_id)
            bus = self._bus(bus_id)

            active = self.stores.journeys.open_for(card.card_number, bus.id)
            if active is not None:
                raise AlreadyActive(active_tap_id=active.id)

            balance = to_money(card.balance or 0)
            if balance < self.settings.min_tap_in_balance:
                raise InsufficientFunds(
                    current_balance=float(balance),
                    minimum_required=float(self.settings.min_tap_in_balance),
                )

            try:
                journey = self.stores.journeys.start(
                    card_number=card.card_number,
                    user_id=card.user_id,
                    bus_id=bus.id,
                    supervisor_id=operator_id,
                    tap_in_time=at,
                    tap_in_lat=where.lat if where else None,
                    tap_in_lng=where.lng if where else None,
                    tap_in_offline_id=key,
                )
            except UniqueViolation as e:
                if e.constraint == OPEN_JOURNEY_GUARD:
                    raise AlreadyActive()
                raise

            log.info("[tap-in] card=%s bus=%s journey=%s", card.card_number, bus.id, journey.id)
            return journey.id, {
                "tap_id": journey.id,
                "card_id": card.card_number,
                "bus_id": bus.id,
                "user_name": card.holder_name,
                "balance": float(balance),
                "tap_in_time": iso_utc(at),
                "message": "Journey started. Have a safe trip!",
            }

        return run_once(self.stores, TAP_IN, key, apply)

    # ------------------------------------------------------------------
    # tap-out
    # ------------------------------------------------------------------
    def tap_out(
        self,
        *,
        card_id: Any,
        bus_id: Any,
        location: Any = None,
        timestamp: Any = None,
        offline_id: Any = None,
        operator_id: Optional[int] = None,
    ) -> EventResult:
        if not card_id or not bus_id:
            raise InvalidRequest("card_id and bus_id are required")
        key = event_key(offline_id, "tapout")

        def apply():
            at = parse_event_time(timestamp)
            where = normalize_location(location)
            card = self.stores.cards.find_by_number(card_id)
            bus = self.stores.transit.resolve_bus(bus_id)
            if card is None or bus is None:
                raise NoActiveJourney()
            journey = self.stores.journeys.open_for(card.card_number, bus.id)
            if journey is None:
                raise NoActiveJourney()

            journey_id = journey.id
            started = journey.tap_in_time
            start = None
            if journey.tap_in_lat is not None and journey.tap_in_lng is not None:
                start = Coordinate(journey.tap_in_lat, journey.tap_in_lng)
            if start is not None and where is not None:
                distance = distance_between(start, where)
            else:
                distance = self.settings.fallback_distance_km

            base, per_km = self._fare_config(bus)
            quote = quote_journey(
                base_fare=base,
                fare_per_km=per_km,
                distance_km=distance,
                co2_kg_per_km=self.settings.co2_kg_per_km,
                points_per_km=self.settings.points_per_km,
            )

            closed = self.stores.journeys.close(
                journey_id,
                tap_out_time=at,
                tap_out_lat=where.lat if where else None,
                tap_out_lng=where.lng if where else None,
                fare=quote.fare,
                distance_km=quote.distance_km,
                co2_saved=quote.co2_saved,
                points_earned=quote.points_earned,
                tap_out_offline_id=key,
            )
            if not closed:
                # a concurrent tap-out closed it first
                raise NoActiveJourney()

            charged, new_balance = ledger.charge_journey(
                self.stores,
                card_id=card.id,
                fare=quote.fare,
                points=quote.points_earned,
                co2=quote.co2_saved,
                journey_id=journey_id,
                actor_id=operator_id,
            )

            minutes = max(duration_minutes(started, at), 0)
            log.info(
                "[tap-out] card=%s bus=%s journey=%s distance=%s fare=%s charged=%s",
                card.card_number, bus.id, journey_id, quote.distance_km, quote.fare, charged,
            )
            return journey_id, {
                "tap_id": journey_id,
                "card_id": card.card_number,
                "bus_id": bus.id,
                "fare": float(quote.fare),
                "amount_charged": float(charged),
                "distance_km": float(quote.distance_km),
                "co2_saved": float(quote.co2_saved),
                "points_earned": quote.points_earned,
                "new_balance": float(new_balance),
                "journey_duration": f"{minutes} minutes",
                "message": f"Journey complete. Fare: ৳{quote.fare}. Thank you for riding green!",
            }

        return run_once(self.stores, TAP_OUT, key, apply)

    # ------------------------------------------------------------------
    # manual tickets
    # ------------------------------------------------------------------
    def issue_manual_ticket(
        self,
        *,
        bus_id: Any,
        fare: Any,
        passenger_count: Any = 1,
        payment_method: Optional[str] = None,
        ticket_type: Optional[str] = None,
        location: Any = None,
        timestamp: Any = None,
        offline_id: Any = None,
        seat_number: Any = None,
        drop_stop_id: Any = None,
        card_id: Any = None,
        operator_id: Optional[int] = None,
    ) -> EventResult:
        if not bus_id:
            raise InvalidRequest("bus_id and fare are required")
        key = event_key(offline_id, "mt")
        method = (payment_method or "cash").strip().lower()
        kind = (ticket_type or "single").strip().lower()

        def apply():
            count = _passenger_count(passenger_count)
            total = _ticket_fare(fare)
            at = parse_event_time(timestamp)
            where = normalize_location(location)
            bus = self._bus(bus_id)

            card = None
            if method == "rapid_card":
                if not card_id:
                    raise InvalidRequest("card_id is required for rapid_card payments")
                card = self._card(card_id)

            drop_stop = None
            if drop_stop_id not in (None, ""):
                stop = self.stores.transit.stop(drop_stop_id)
                if stop is None:
                    raise StopNotFound()
                drop_stop = stop.name

            ticket = self.stores.transit.create_ticket(
                bus_id=bus.id,
                issued_by=operator_id,
                passenger_count=count,
                fare=total,
                payment_method=method,
                ticket_type=kind,
                issued_at=at,
                lat=where.lat if where else None,
                lng=where.lng if where else None,
                offline_id=key,
                card_id=card.id if card else None,
            )

            outcome: Dict[str, Any] = {
                "ticket_id": ticket.id,
                "bus_id": bus.id,
                "bus_number": bus.identifier,
                "passenger_count": count,
                "total_fare": float(total),
                "payment_method": method,
                "ticket_type": kind,
                "issued_at": iso_utc(at),
                "message": f"Ticket issued for {count} passenger(s). Total: ৳{total}",
            }

            if seat_number not in (None, ""):
                booking = hold_seat(
                    self.stores,
                    bus=bus,
                    seat_no=seat_number,
                    travel_date=local_date(at, self.settings.zone),
                    status="occupied",
                    default_capacity=self.settings.default_bus_capacity,
                    route_id=bus.route_id,
                    user_id=card.user_id if card else None,
                    issued_by=operator_id,
                    ticket_id=ticket.id,
                    fare=total,
                    payment_method=method,
                    payment_status="paid",
                    drop_stop=drop_stop,
                    card_id=card.id if card else None,
                )
                outcome["booking"] = booking_json(booking)

            if card is not None and total > 0:
                outcome["new_balance"] = float(ledger.charge(
                    self.stores,
                    card_id=card.id,
                    amount=total,
                    txn_type="manual_ticket",
                    ref_table="manual_tickets",
                    ref_id=ticket.id,
                    description=f"Manual ticket x{count} on {bus.identifier}",
                    actor_id=operator_id,
                ))

            log.info("[manual-ticket] bus=%s ticket=%s pax=%s fare=%s method=%s",
                     bus.id, ticket.id, count, total, method)
            return ticket.id, outcome

        return run_once(self.stores, MANUAL_TICKET, key, apply)

    # ------------------------------------------------------------------
    # card registry
    # ------------------------------------------------------------------
    def card_status(self, card_id: Any) -> Dict[str, Any]:
        card = self._card(card_id)
        out = self._card_json(card)
        out["last_used"] = iso_utc(self.stores.journeys.last_used(card.card_number))
        return out

    def registered_cards(self):
        return [self._card_json(c) for c in self.stores.cards.registered()]

    @staticmethod
    def _card_json(card) -> Dict[str, Any]:
        return {
            "card_id": card.card_number,
            "nfc_id": card.card_number,
            "passenger_name": card.holder_name,
            "balance": float(to_money(card.balance or 0)),
            "points": int(card.points or 0),
            "co2_saved": float(to_money(card.co2_saved or 0)),
            "status": card.status or "active",
            "registered_at": iso_utc(getattr(card, "created_at", None)),
        }
