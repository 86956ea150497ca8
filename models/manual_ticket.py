from db import db
from utils.timeutil import now_utc_naive


class ManualTicket(db.Model):
    __tablename__ = 'manual_tickets'

    id              = db.Column(db.Integer, primary_key=True)
    bus_id          = db.Column(db.Integer, db.ForeignKey("buses.id"), nullable=False, index=True)

    # the supervisor/operator who issued the ticket
    issued_by       = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=True)

    passenger_count = db.Column(db.Integer, nullable=False, default=1)
    fare            = db.Column(db.Numeric(10, 2), nullable=False)
    payment_method  = db.Column(db.String(32), nullable=False, server_default='cash')
    ticket_type     = db.Column(db.String(32), nullable=False, server_default='single')
    issued_at       = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
    lat             = db.Column(db.Float, nullable=True)
    lng             = db.Column(db.Float, nullable=True)
    offline_id      = db.Column(db.String(64), nullable=True, index=True)

    # set only when the fare was taken from a rider's card
    card_id         = db.Column(db.Integer, db.ForeignKey("cards.id"), nullable=True)

    created_at      = db.Column(db.DateTime, default=now_utc_naive, nullable=False)

    __table_args__ = (
        db.CheckConstraint("passenger_count >= 1", name="ck_manual_tickets_passenger_count"),
        db.CheckConstraint("fare >= 0", name="ck_manual_tickets_fare"),
    )

    bus     = db.relationship("Bus", back_populates="manual_tickets")
    issuer  = db.relationship("User", foreign_keys=[issued_by])
    booking = db.relationship("Booking", back_populates="ticket", uselist=False)
