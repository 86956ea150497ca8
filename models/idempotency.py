# models/idempotency.py
from db import db
from utils.timeutil import now_utc_naive


class IdempotencyRecord(db.Model):
    """Durable memory of offline event ids that were already applied."""
    __tablename__ = "idempotency_records"

    event_type = db.Column(db.String(32), primary_key=True)   # tap_in | tap_out | manual_ticket | booking
    offline_id = db.Column(db.String(64), primary_key=True)
    ref_id     = db.Column(db.Integer, nullable=True)
    outcome    = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=now_utc_naive, nullable=False)
