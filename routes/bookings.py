from __future__ import annotations

from flask import Blueprint, request, jsonify, current_app, g

from auth_guard import require_role
from realtime import emit_seat_update
from services.context import seat_reservations
from services.errors import InvalidRequest

bookings_bp = Blueprint("bookings", __name__, url_prefix="/bookings")

STAFF = ("driver", "supervisor")


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("JSON object body required")
    return data


@bookings_bp.route("", methods=["POST"])
@require_role("rider")
def create_booking():
    data = _body()
    key = (request.headers.get("Idempotency-Key") or "").strip() or data.get("offline_id")

    current_app.logger.info(
        "[bookings] create uid=%s bus=%s seat=%s date=%s key=%s",
        g.user.id, data.get("bus_id"), data.get("seat_no"), data.get("travel_date"), key or "—",
    )
    if not data.get("bus_id") or data.get("seat_no") in (None, ""):
        raise InvalidRequest("bus_id and seat_no are required")

    result = seat_reservations().book(
        bus_id=data.get("bus_id"),
        traveler_id=g.user.id,
        seat_no=data.get("seat_no"),
        travel_date=data.get("travel_date"),
        route_id=data.get("route_id"),
        fare=data.get("fare"),
        payment_method=data.get("payment_method"),
        drop_stop=data.get("drop_stop"),
        offline_id=key,
        actor_id=g.user.id,
    )
    if result.duplicate:
        return jsonify(success=True, status="duplicate", booking=result.data), 200

    emit_seat_update(result.data["bus_id"], {"event": "booked", "booking": result.data})
    return jsonify(success=True, status="created", booking=result.data), 201


@bookings_bp.route("/bus/<bus_id>", methods=["GET"])
@require_role(*STAFF)
def bus_seat_map(bus_id: str):
    out = seat_reservations().seat_map(bus_id=bus_id, travel_date=request.args.get("date"))
    return jsonify(success=True, **out), 200


@bookings_bp.route("/<int:booking_id>/cancel", methods=["PATCH"])
@require_role()
def cancel_booking(booking_id: int):
    out = seat_reservations().cancel(booking_id, actor_id=g.user.id, actor_role=g.role)
    current_app.logger.info("[bookings] cancel id=%s by uid=%s", booking_id, g.user.id)
    emit_seat_update(out["bus_id"], {"event": "cancelled", "seat_no": out["seat_no"],
                                     "travel_date": out["travel_date"]})
    return jsonify(success=True, booking=out), 200


@bookings_bp.route("/release-stop", methods=["POST"])
@require_role(*STAFF)
def release_stop():
    data = _body()
    if not data.get("bus_id"):
        raise InvalidRequest("bus_id and stop_name are required")
    out = seat_reservations().release_at_stop(
        bus_id=data.get("bus_id"),
        stop_name=data.get("stop_name"),
        travel_date=data.get("date"),
    )
    current_app.logger.info("[bookings] release-stop bus=%s stop=%r released=%s",
                            out["bus_id"], out["stop_name"], out["released"])
    if out["released"]:
        emit_seat_update(out["bus_id"], {"event": "released", "booking_ids": out["booking_ids"]})
    return jsonify(success=True, **out), 200


@bookings_bp.route("/complete", methods=["POST"])
@require_role(*STAFF)
def complete_trip():
    data = _body()
    if not data.get("bus_id"):
        raise InvalidRequest("bus_id is required")
    out = seat_reservations().complete_bus(bus_id=data.get("bus_id"), travel_date=data.get("date"))
    current_app.logger.info("[bookings] complete bus=%s date=%s completed=%s",
                            out["bus_id"], out["travel_date"], out["completed"])
    if out["completed"]:
        emit_seat_update(out["bus_id"], {"event": "completed", "booking_ids": out["booking_ids"]})
    return jsonify(success=True, **out), 200
