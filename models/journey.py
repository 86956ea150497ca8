# models/journey.py
from __future__ import annotations
from db import db
from utils.timeutil import now_utc_naive


class Journey(db.Model):
    """
    One row per tap-in, completed in place by the matching tap-out.

    `open_slot` is 1 while the journey is open and NULL once closed; the unique
    key over (card_number, bus_id, open_slot) therefore allows any number of
    closed journeys but at most one open journey per card and bus.
    """
    __tablename__ = "journeys"

    id                 = db.Column(db.Integer, primary_key=True)
    card_number        = db.Column(db.String(64), nullable=False, index=True)
    user_id            = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    bus_id             = db.Column(db.Integer, db.ForeignKey("buses.id"), nullable=False, index=True)
    supervisor_id      = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    tap_in_time        = db.Column(db.DateTime, nullable=False, default=now_utc_naive)
    tap_in_lat         = db.Column(db.Float, nullable=True)
    tap_in_lng         = db.Column(db.Float, nullable=True)
    tap_out_time       = db.Column(db.DateTime, nullable=True)
    tap_out_lat        = db.Column(db.Float, nullable=True)
    tap_out_lng        = db.Column(db.Float, nullable=True)

    fare               = db.Column(db.Numeric(10, 2), nullable=True)
    distance_km        = db.Column(db.Numeric(8, 2), nullable=True)
    co2_saved          = db.Column(db.Numeric(8, 2), nullable=True)
    points_earned      = db.Column(db.Integer, nullable=True)

    tap_in_offline_id  = db.Column(db.String(64), nullable=True, index=True)
    tap_out_offline_id = db.Column(db.String(64), nullable=True, index=True)
    open_slot          = db.Column(db.SmallInteger, nullable=True, default=1)

    created_at         = db.Column(db.DateTime, default=now_utc_naive, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("card_number", "bus_id", "open_slot", name="uq_journeys_one_open_per_card_bus"),
    )

    bus = db.relationship("Bus", back_populates="journeys")
    rider = db.relationship("User", foreign_keys=[user_id])
    supervisor = db.relationship("User", foreign_keys=[supervisor_id])
