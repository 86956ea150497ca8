from __future__ import annotations

from flask import Blueprint, request, jsonify, current_app, g

from auth_guard import require_role
from services import ledger, records
from services.context import current_stores
from services.errors import CardNotFound, InvalidRequest

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _card_or_404(stores, card_id: str):
    card = stores.cards.find_by_number(card_id)
    if card is None:
        raise CardNotFound()
    return card


@admin_bp.route("/cards/<path:card_id>/balance", methods=["POST"])
@require_role("admin")
def update_balance(card_id: str):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict) or data.get("amount") is None:
        raise InvalidRequest("amount is required")
    operation = data.get("operation") or "add"

    stores = current_stores()
    with stores.transaction():
        card = _card_or_404(stores, card_id)
        number = card.card_number
        previous, new_balance = ledger.adjust(
            stores,
            card_id=card.id,
            amount=data.get("amount"),
            operation=operation,
            actor_id=g.user.id,
            note=(data.get("note") or "").strip() or None,
        )

    current_app.logger.info(
        "[admin] balance %s card=%s amount=%s by uid=%s: %s -> %s",
        operation, number, data.get("amount"), g.user.id, previous, new_balance,
    )
    return jsonify(
        success=True,
        card_id=number,
        operation=operation,
        previous_balance=float(previous),
        new_balance=float(new_balance),
    ), 200


@admin_bp.route("/cards/<path:card_id>/topup", methods=["POST"])
@require_role("admin", "supervisor")
def cash_topup(card_id: str):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict) or data.get("amount") is None:
        raise InvalidRequest("amount is required")

    stores = current_stores()
    with stores.transaction():
        card = _card_or_404(stores, card_id)
        number = card.card_number
        new_balance = ledger.topup_cash(stores, card_id=card.id, amount=data.get("amount"), actor_id=g.user.id)

    current_app.logger.info("[admin] cash topup card=%s amount=%s by uid=%s -> %s",
                            number, data.get("amount"), g.user.id, new_balance)
    return jsonify(success=True, card_id=number, new_balance=float(new_balance)), 200


# ── Read-back ────────────────────────────────────────────────────────────────
@admin_bp.route("/journeys", methods=["GET"])
@require_role("admin", "supervisor")
def journey_log():
    """?bus_id= &card_id= &from= &to= (ISO-8601); newest tap-in first."""
    rows = records.journey_log(
        current_stores(),
        bus_id=request.args.get("bus_id"),
        card_id=request.args.get("card_id"),
        since=request.args.get("from"),
        until=request.args.get("to"),
    )
    return jsonify(success=True, journeys=rows), 200


@admin_bp.route("/manual-tickets", methods=["GET"])
@require_role("admin", "supervisor")
def manual_ticket_log():
    rows = records.manual_tickets(
        current_stores(),
        bus_id=request.args.get("bus_id"),
        since=request.args.get("from"),
        until=request.args.get("to"),
    )
    return jsonify(success=True, manual_tickets=rows), 200


@admin_bp.route("/cards/<path:card_id>/transactions", methods=["GET"])
@require_role("admin", "supervisor")
def card_transactions(card_id: str):
    return jsonify(success=True, **records.card_transactions(current_stores(), card_id)), 200
