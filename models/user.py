# models/user.py
from __future__ import annotations
from db import db
from utils.timeutil import now_utc_naive

ROLES = ("rider", "driver", "supervisor", "admin")


class User(db.Model):
    __tablename__ = "users"

    id               = db.Column(db.Integer, primary_key=True, autoincrement=True)
    username         = db.Column(db.String(80), nullable=False, unique=True, index=True)
    first_name       = db.Column(db.String(80), nullable=True)
    last_name        = db.Column(db.String(80), nullable=True)
    role             = db.Column(db.String(32), nullable=False, default="rider", index=True)
    assigned_bus_id  = db.Column(db.Integer, db.ForeignKey("buses.id"), nullable=True, index=True)

    created_at       = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
    updated_at       = db.Column(db.DateTime, default=now_utc_naive, onupdate=now_utc_naive, nullable=False)

    # ── Relationships ────────────────────────────────────────────────────────
    assigned_bus = db.relationship(
        "Bus",
        back_populates="staff",
        foreign_keys=[assigned_bus_id],
    )

    card = db.relationship("Card", back_populates="owner", uselist=False)

    @property
    def name(self) -> str:
        fn = (self.first_name or "").strip()
        ln = (self.last_name or "").strip()
        return (fn + " " + ln).strip() or (self.username or f"User #{self.id}")
