# services/records.py
"""Read-back of the trip ledger: journey log, manual tickets and card transactions."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from services.errors import BusNotFound, CardNotFound
from utils.fare import to_money
from utils.timeutil import iso_utc, parse_time_filter

LOG_LIMIT = 500


def _money(x) -> Optional[float]:
    return float(to_money(x)) if x is not None else None


def journey_json(j) -> Dict[str, Any]:
    return {
        "id": j.id,
        "card_id": j.card_number,
        "user_id": j.user_id,
        "passenger_name": j.rider.name if j.rider else None,
        "bus_id": j.bus_id,
        "bus_number": j.bus.identifier if j.bus else None,
        "status": "active" if j.open_slot is not None else "completed",
        "tap_in_time": iso_utc(j.tap_in_time),
        "tap_out_time": iso_utc(j.tap_out_time),
        "fare": _money(j.fare),
        "distance_km": _money(j.distance_km),
        "co2_saved": _money(j.co2_saved),
        "points_earned": j.points_earned,
    }


def ticket_json(t) -> Dict[str, Any]:
    return {
        "id": t.id,
        "bus_id": t.bus_id,
        "bus_number": t.bus.identifier if t.bus else None,
        "issued_by": t.issued_by,
        "supervisor_name": t.issuer.name if t.issuer else None,
        "passenger_count": t.passenger_count,
        "fare": _money(t.fare),
        "payment_method": t.payment_method,
        "ticket_type": t.ticket_type,
        "issued_at": iso_utc(t.issued_at),
    }


def transaction_json(t) -> Dict[str, Any]:
    return {
        "id": t.id,
        "direction": t.direction,
        "transaction_type": t.transaction_type,
        "amount": _money(t.amount),
        "running_balance": _money(t.running_balance),
        "ref_table": t.ref_table,
        "ref_id": t.ref_id,
        "description": t.description,
        "created_at": iso_utc(t.created_at),
    }


def _bus_id(stores, raw) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        return None
    bus = stores.transit.resolve_bus(raw)
    if bus is None:
        raise BusNotFound()
    return bus.id


def journey_log(stores, *, bus_id=None, card_id=None, since=None, until=None) -> List[Dict[str, Any]]:
    """Newest first, capped at LOG_LIMIT rows; `since`/`until` bound the tap-in time."""
    card_number = None
    if card_id not in (None, ""):
        card = stores.cards.find_by_number(card_id)
        if card is None:
            raise CardNotFound()
        card_number = card.card_number
    rows = stores.journeys.recent(
        bus_id=_bus_id(stores, bus_id),
        card_number=card_number,
        since=parse_time_filter(since, "from"),
        until=parse_time_filter(until, "to"),
        limit=LOG_LIMIT,
    )
    return [journey_json(j) for j in rows]


def manual_tickets(stores, *, bus_id=None, since=None, until=None) -> List[Dict[str, Any]]:
    rows = stores.transit.tickets(
        bus_id=_bus_id(stores, bus_id),
        since=parse_time_filter(since, "from"),
        until=parse_time_filter(until, "to"),
        limit=LOG_LIMIT,
    )
    return [ticket_json(t) for t in rows]


def card_transactions(stores, card_id) -> Dict[str, Any]:
    card = stores.cards.find_by_number(card_id)
    if card is None:
        raise CardNotFound()
    return {
        "card_id": card.card_number,
        "balance": float(to_money(card.balance or 0)),
        "transactions": [transaction_json(t) for t in stores.ledger.history(card.id, limit=LOG_LIMIT)],
    }
