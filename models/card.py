# models/card.py
from __future__ import annotations
from decimal import Decimal

from db import db
from utils.timeutil import now_utc_naive


class Card(db.Model):
    __tablename__ = "cards"

    id            = db.Column(db.Integer, primary_key=True, autoincrement=True)
    card_number   = db.Column(db.String(64), nullable=False, unique=True, index=True)  # e.g. RC-00000001
    user_id       = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)
    balance       = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    points        = db.Column(db.Integer, nullable=False, default=0)
    co2_saved     = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))  # kg
    status        = db.Column(db.String(16), nullable=False, server_default="active")

    created_at    = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
    updated_at    = db.Column(db.DateTime, default=now_utc_naive, onupdate=now_utc_naive, nullable=False)

    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_cards_balance_non_negative"),
    )

    owner = db.relationship("User", back_populates="card")

    transactions = db.relationship(
        "CardTransaction",
        primaryjoin="CardTransaction.card_id==Card.id",
        foreign_keys="CardTransaction.card_id",
        backref="card",
        lazy="dynamic",
    )

    @property
    def holder_name(self) -> str:
        return self.owner.name if self.owner else ""


class CardTransaction(db.Model):
    """Audit row for every balance mutation (fares, payments, top-ups, adjustments)."""
    __tablename__ = "card_transactions"

    id               = db.Column(db.Integer, primary_key=True, autoincrement=True)
    card_id          = db.Column(db.Integer, db.ForeignKey("cards.id"), nullable=False, index=True)
    direction        = db.Column(db.Enum("credit", "debit", name="card_txn_direction"), nullable=False)
    transaction_type = db.Column(db.String(32), nullable=False)

    amount           = db.Column(db.Numeric(10, 2), nullable=False)
    running_balance  = db.Column(db.Numeric(10, 2), nullable=False)

    ref_table        = db.Column(db.String(64), nullable=True)
    ref_id           = db.Column(db.Integer, nullable=True)
    description      = db.Column(db.String(255), nullable=True)
    actor_id         = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at       = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
