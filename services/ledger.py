# services/ledger.py
"""
Card ledger services.

Amounts are Decimal taka, 2 dp.

Public API:
  - charge_journey(stores, card_id, fare, points, co2, journey_id, actor_id=None)
  - charge(stores, card_id, amount, txn_type, ref_table=None, ref_id=None, ...)
  - credit(stores, card_id, amount, txn_type, ref_table=None, ref_id=None, ...)
  - adjust(stores, card_id, amount, operation, actor_id=None, note=None)
  - topup_cash(stores, card_id, amount, actor_id=None)

Return values:
  - charge_journey -> (charged: Decimal, new_balance: Decimal)
  - charge / credit / topup_cash -> new_balance: Decimal
  - adjust -> (previous_balance: Decimal, new_balance: Decimal)

None of these commit. Callers run them inside `stores.transaction()` together
with the row that the ledger entry refers to.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Tuple

from services.errors import CardNotFound, InsufficientFunds, InvalidRequest
from utils.fare import to_money

log = logging.getLogger("ledger")

ADJUST_OPERATIONS = ("add", "deduct", "set")


# ---------- small utils ----------

def _positive(amount, field: str = "amount") -> Decimal:
    try:
        value = to_money(amount)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidRequest(f"{field} must be a number")
    if value <= 0:
        raise InvalidRequest(f"{field} must be positive")
    return value


def _lock(stores, card_id: int) -> Decimal:
    """SELECT ... FOR UPDATE the balance; the card must exist."""
    current = stores.ledger.balance_for_update(card_id)
    if current is None:
        raise CardNotFound()
    return to_money(current)


# ---------- public API ----------

def charge_journey(
    stores,
    *,
    card_id: int,
    fare: Decimal,
    points: int,
    co2: Decimal,
    journey_id: int,
    actor_id: Optional[int] = None,
) -> Tuple[Decimal, Decimal]:
    """
    Debit a completed journey's fare and credit its rewards in one UPDATE.
    The balance is clamped at zero; the ledger row records what was actually
    taken. Returns (charged, new_balance).
    """
    before = _lock(stores, card_id)
    new_balance = to_money(stores.ledger.apply_delta(
        card_id,
        balance_delta=-to_money(fare),
        points_delta=int(points),
        co2_delta=to_money(co2),
        clamp=True,
    ))
    charged = to_money(before - new_balance)

    description = f"Journey fare {to_money(fare)}"
    if charged < to_money(fare):
        description += f" (short {to_money(fare) - charged})"
        log.warning("[ledger] card=%s journey=%s fare %s clamped to %s", card_id, journey_id, fare, charged)

    stores.ledger.record(
        card_id=card_id,
        direction="debit",
        transaction_type="fare",
        amount=charged,
        running_balance=new_balance,
        ref_table="journeys",
        ref_id=journey_id,
        description=description,
        actor_id=actor_id,
    )
    return charged, new_balance


def charge(
    stores,
    *,
    card_id: int,
    amount,
    txn_type: str,
    ref_table: Optional[str] = None,
    ref_id: Optional[int] = None,
    description: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Decimal:
    """
    Debit only when the balance covers the whole amount (ticket and booking
    payments). Raises InsufficientFunds otherwise.
    """
    value = _positive(amount)
    _lock(stores, card_id)
    new_balance = stores.ledger.debit_if_covered(card_id, value)
    if new_balance is None:
        raise InsufficientFunds()
    new_balance = to_money(new_balance)
    stores.ledger.record(
        card_id=card_id,
        direction="debit",
        transaction_type=txn_type,
        amount=value,
        running_balance=new_balance,
        ref_table=ref_table,
        ref_id=ref_id,
        description=description,
        actor_id=actor_id,
    )
    return new_balance


def credit(
    stores,
    *,
    card_id: int,
    amount,
    txn_type: str,
    ref_table: Optional[str] = None,
    ref_id: Optional[int] = None,
    description: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Decimal:
    """Generic card credit (top-ups, refunds)."""
    value = _positive(amount)
    _lock(stores, card_id)
    new_balance = to_money(stores.ledger.apply_delta(card_id, balance_delta=value, clamp=False))
    stores.ledger.record(
        card_id=card_id,
        direction="credit",
        transaction_type=txn_type,
        amount=value,
        running_balance=new_balance,
        ref_table=ref_table,
        ref_id=ref_id,
        description=description,
        actor_id=actor_id,
    )
    return new_balance


def topup_cash(stores, *, card_id: int, amount, actor_id: Optional[int] = None) -> Decimal:
    amount = _positive(amount)
    return credit(
        stores,
        card_id=card_id,
        amount=amount,
        txn_type="topup:cash",
        ref_table="cards",
        ref_id=card_id,
        description=f"Cash top-up {amount}",
        actor_id=actor_id,
    )


def adjust(
    stores,
    *,
    card_id: int,
    amount,
    operation: str = "add",
    actor_id: Optional[int] = None,
    note: Optional[str] = None,
) -> Tuple[Decimal, Decimal]:
    """
    Admin balance adjustment.
      add    -> balance + amount
      deduct -> max(balance - amount, 0)
      set    -> amount
    Returns (previous_balance, new_balance).
    """
    op = (operation or "add").strip().lower()
    if op not in ADJUST_OPERATIONS:
        raise InvalidRequest("operation must be one of add, deduct, set")

    if op == "set":
        try:
            value = to_money(amount)
        except (ArithmeticError, TypeError, ValueError):
            raise InvalidRequest("amount must be a number")
        if value < 0:
            raise InvalidRequest("amount must not be negative")
    else:
        value = _positive(amount)

    previous = _lock(stores, card_id)
    if op == "add":
        new_balance = stores.ledger.apply_delta(card_id, balance_delta=value, clamp=False)
    elif op == "deduct":
        new_balance = stores.ledger.apply_delta(card_id, balance_delta=-value, clamp=True)
    else:
        new_balance = stores.ledger.set_balance(card_id, value)
    new_balance = to_money(new_balance)

    delta = new_balance - previous
    description = f"Admin balance {op}: {value}"
    if note:
        description = f"{description} ({note})"[:255]
    stores.ledger.record(
        card_id=card_id,
        direction="credit" if delta >= 0 else "debit",
        transaction_type="admin_adjustment",
        amount=abs(delta),
        running_balance=new_balance,
        ref_table="cards",
        ref_id=card_id,
        description=description,
        actor_id=actor_id,
    )
    log.info("[ledger] card=%s admin %s %s: %s -> %s", card_id, op, value, previous, new_balance)
    return previous, new_balance
