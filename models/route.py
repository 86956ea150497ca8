# models/route.py
from db import db

class Route(db.Model):
    __tablename__ = 'routes'

    id          = db.Column(db.Integer, primary_key=True)
    name        = db.Column(db.String(128), nullable=False)
    base_fare   = db.Column(db.Numeric(10, 2), nullable=True)
    fare_per_km = db.Column(db.Numeric(10, 2), nullable=True)
    distance_km = db.Column(db.Numeric(8, 2), nullable=True)

    buses = db.relationship('Bus', back_populates='route')
    stops = db.relationship(
        'Stop',
        back_populates='route',
        order_by='Stop.seq',
        cascade='all, delete-orphan'
    )


class Stop(db.Model):
    __tablename__ = 'stops'

    id        = db.Column(db.Integer, primary_key=True)
    route_id  = db.Column(db.Integer, db.ForeignKey('routes.id'), nullable=False, index=True)
    seq       = db.Column(db.Integer, nullable=False)
    name      = db.Column(db.String(128), nullable=False)
    lat       = db.Column(db.Float, nullable=True)
    lng       = db.Column(db.Float, nullable=True)

    route = db.relationship('Route', back_populates='stops')
