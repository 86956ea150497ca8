from __future__ import annotations
from db import db

class Bus(db.Model):
    __tablename__ = "buses"

    id          = db.Column(db.Integer, primary_key=True)
    identifier  = db.Column(db.String(64), nullable=False, unique=True)
    capacity    = db.Column(db.Integer, nullable=True)
    description = db.Column(db.String(128), nullable=True)
    route_id    = db.Column(db.Integer, db.ForeignKey("routes.id"), nullable=True, index=True)

    route = db.relationship("Route", back_populates="buses")

    # Inverse of User.assigned_bus
    staff = db.relationship(
        "User",
        back_populates="assigned_bus",
        foreign_keys="User.assigned_bus_id",
        cascade="save-update",
    )

    journeys = db.relationship("Journey", back_populates="bus")
    manual_tickets = db.relationship("ManualTicket", back_populates="bus")
    bookings = db.relationship("Booking", back_populates="bus")
