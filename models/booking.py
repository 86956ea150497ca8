# models/booking.py
from __future__ import annotations
from db import db
from utils.timeutil import now_utc_naive

HELD_STATUSES = ("booked", "confirmed", "occupied")
BOOKING_STATUSES = HELD_STATUSES + ("completed", "cancelled")


class Booking(db.Model):
    """
    A seat held on a bus for one travel date.

    `seat_hold` is 1 while the booking holds its seat and NULL once it is
    cancelled or completed, so the unique key below only bites on live holds.
    """
    __tablename__ = "bookings"

    id             = db.Column(db.Integer, primary_key=True)
    bus_id         = db.Column(db.Integer, db.ForeignKey("buses.id"), nullable=False, index=True)
    route_id       = db.Column(db.Integer, db.ForeignKey("routes.id"), nullable=True)
    seat_no        = db.Column(db.Integer, nullable=False)
    travel_date    = db.Column(db.Date, nullable=False, index=True)

    user_id        = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    issued_by      = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    ticket_id      = db.Column(db.Integer, db.ForeignKey("manual_tickets.id"), nullable=True)
    card_id        = db.Column(db.Integer, db.ForeignKey("cards.id"), nullable=True)  # paying card, if any

    status         = db.Column(db.String(16), nullable=False, default="confirmed", index=True)
    fare           = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    payment_method = db.Column(db.String(32), nullable=True)
    payment_status = db.Column(db.String(16), nullable=True)
    drop_stop      = db.Column(db.String(128), nullable=True)
    seat_hold      = db.Column(db.SmallInteger, nullable=True, default=1)

    created_at     = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
    updated_at     = db.Column(db.DateTime, default=now_utc_naive, onupdate=now_utc_naive, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("bus_id", "travel_date", "seat_no", "seat_hold", name="uq_bookings_seat_hold"),
        db.CheckConstraint("seat_no >= 1", name="ck_bookings_seat_no"),
    )

    bus      = db.relationship("Bus", back_populates="bookings")
    route    = db.relationship("Route")
    traveler = db.relationship("User", foreign_keys=[user_id])
    issuer   = db.relationship("User", foreign_keys=[issued_by])
    ticket   = db.relationship("ManualTicket", back_populates="booking")
