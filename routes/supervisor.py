from __future__ import annotations

from typing import Any, Callable, Dict

from flask import Blueprint, request, jsonify, current_app, g

from auth_guard import require_role
from db import db
from realtime import emit_seat_update
from services.context import current_settings, fare_meter
from services.errors import FareError, Internal, InvalidRequest
from services.idempotency import EventResult
from services.sync import process_batch

supervisor_bp = Blueprint("supervisor", __name__, url_prefix="/supervisor")


# ──────────────────────────────────────────────────────────────────────────────
# Small helpers

def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("JSON object body required")
    return data


def _operator_id():
    return getattr(g, "user", None) and g.user.id


def _ingest(tag: str, data: Dict[str, Any], run: Callable[[], EventResult]) -> EventResult:
    """
    Run one ingestion call. Domain errors go to the app's FareError handler;
    anything else is logged with the event context and reported as 500
    without storage detail.
    """
    try:
        result = run()
    except FareError as e:
        current_app.logger.info(
            "[%s] rejected code=%s offline_id=%s bus=%s card=%s",
            tag, e.code, data.get("offline_id"), data.get("bus_id"), data.get("card_id"),
        )
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "[%s] failed offline_id=%s bus=%s card=%s",
            tag, data.get("offline_id"), data.get("bus_id"), data.get("card_id"),
        )
        raise Internal()

    if result.duplicate:
        current_app.logger.info("[%s] duplicate offline_id=%s", tag, data.get("offline_id"))
    return result


def _respond(result: EventResult, created_status: int):
    body = dict(result.data)
    body["success"] = True
    body["status"] = result.status
    if result.duplicate:
        body["message"] = "Event already processed"
        return jsonify(body), 200
    return jsonify(body), created_status


# ──────────────────────────────────────────────────────────────────────────────
# Tap events

@supervisor_bp.route("/tap-in", methods=["POST"])
@require_role("supervisor")
def tap_in():
    data = _body()
    meter = fare_meter()
    result = _ingest("tap-in", data, lambda: meter.tap_in(
        card_id=data.get("card_id"),
        bus_id=data.get("bus_id"),
        location=data.get("location"),
        timestamp=data.get("timestamp"),
        offline_id=data.get("offline_id"),
        operator_id=_operator_id(),
    ))
    return _respond(result, 201)


@supervisor_bp.route("/tap-out", methods=["POST"])
@require_role("supervisor")
def tap_out():
    data = _body()
    meter = fare_meter()
    result = _ingest("tap-out", data, lambda: meter.tap_out(
        card_id=data.get("card_id"),
        bus_id=data.get("bus_id"),
        location=data.get("location"),
        timestamp=data.get("timestamp"),
        offline_id=data.get("offline_id"),
        operator_id=_operator_id(),
    ))
    return _respond(result, 200)


# ──────────────────────────────────────────────────────────────────────────────
# Manual tickets

@supervisor_bp.route("/manual-ticket", methods=["POST"])
@require_role("supervisor")
def manual_ticket():
    data = _body()
    meter = fare_meter()
    result = _ingest("manual-ticket", data, lambda: meter.issue_manual_ticket(
        bus_id=data.get("bus_id"),
        fare=data.get("fare"),
        passenger_count=data.get("passenger_count", 1),
        payment_method=data.get("payment_method"),
        ticket_type=data.get("ticket_type"),
        location=data.get("location"),
        timestamp=data.get("timestamp"),
        offline_id=data.get("offline_id"),
        seat_number=data.get("seat_number"),
        drop_stop_id=data.get("drop_stop_id"),
        card_id=data.get("card_id"),
        operator_id=_operator_id(),
    ))
    booking = result.data.get("booking")
    if booking and not result.duplicate:
        emit_seat_update(booking["bus_id"], {"event": "occupied", "booking": booking})
    return _respond(result, 201)


# ──────────────────────────────────────────────────────────────────────────────
# Offline batch

@supervisor_bp.route("/sync", methods=["POST"])
@require_role("supervisor")
def sync():
    data = _body()
    events = data.get("events")
    current_app.logger.info(
        "[sync] uid=%s events=%s",
        _operator_id(),
        len(events) if isinstance(events, list) else "(none)",
    )
    out = process_batch(
        fare_meter(),
        events,
        operator_id=_operator_id(),
        max_batch=current_settings().sync_max_batch,
    )
    for r in out["results"]:
        booking = (r.get("data") or {}).get("booking")
        if booking and r["status"] == "success":
            emit_seat_update(booking["bus_id"], {"event": "occupied", "booking": booking})
    return jsonify(success=True, **out), 200


# ──────────────────────────────────────────────────────────────────────────────
# Card registry

@supervisor_bp.route("/cards", methods=["GET"])
@require_role("supervisor")
def list_cards():
    cards = fare_meter().registered_cards()
    return jsonify(success=True, cards=cards, total=len(cards)), 200


@supervisor_bp.route("/cards/<path:card_id>", methods=["GET"])
@require_role("supervisor")
def card_lookup(card_id: str):
    return jsonify(success=True, **fare_meter().card_status(card_id)), 200
