# app.py
from __future__ import annotations

import os

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from flask_cors import CORS
from sqlalchemy import event

from config import Config
from db import db, migrate
from realtime import socketio
from services.errors import FareError, Internal

# Ensure models are imported so Flask-Migrate sees them
from models.user import User
from models.route import Route, Stop
from models.bus import Bus
from models.card import Card, CardTransaction
from models.journey import Journey
from models.manual_ticket import ManualTicket
from models.booking import Booking
from models.idempotency import IdempotencyRecord

# Blueprints
from routes.supervisor import supervisor_bp
from routes.bookings import bookings_bp
from routes.admin import admin_bp

# Background tasks / CLI
from tasks.close_bookings import close_stale_bookings
from utils.timeutil import parse_travel_date


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__)

    # Respect reverse proxy headers (scheme / host) for correct URL generation
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[arg-type]

    # CORS (open for now; tighten origins for production)
    CORS(app, resources={r"/*": {"origins": "*"}})

    # Load config + init extensions
    app.config.from_object(config_object)
    db.init_app(app)
    migrate.init_app(app, db)
    socketio.init_app(app, cors_allowed_origins="*")

    with app.app_context():
        # All timestamps are written by the app as naive UTC; pin MySQL sessions
        # to UTC so NOW() and CURRENT_TIMESTAMP agree with them.
        if db.engine.dialect.name == "mysql":
            tz = app.config.get("DB_SESSION_TIME_ZONE", "+00:00")

            @event.listens_for(db.engine, "connect")
            def _set_session_timezone(dbapi_conn, _):
                cur = dbapi_conn.cursor()
                try:
                    cur.execute(f"SET time_zone = '{tz}'")
                finally:
                    cur.close()

        # Touch models so Alembic/Flask-Migrate registers them
        _ = (User, Route, Stop, Bus, Card, CardTransaction, Journey, ManualTicket, Booking, IdempotencyRecord)

    # Health check
    @app.route("/")
    def health_check():
        return jsonify(status="ok"), 200

    @app.errorhandler(FareError)
    def handle_fare_error(e: FareError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_404(e):
        return jsonify(error="Not Found", path=request.path), 404

    # Global error handler
    @app.errorhandler(Exception)
    def handle_any_error(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify(error=e.description), e.code
        db.session.rollback()
        app.logger.exception("[app] unhandled error on %s %s", request.method, request.path)
        return jsonify(Internal().to_dict()), 500

    # Register blueprints
    app.register_blueprint(supervisor_bp)
    app.register_blueprint(bookings_bp)
    app.register_blueprint(admin_bp)

    # CLI: complete bookings left open on past travel dates
    @app.cli.command("close-bookings")
    @click.option("--before", default=None, help="Complete held bookings dated before YYYY-MM-DD (default: today in APP_TIMEZONE)")
    def close_bookings_cmd(before):
        ids = close_stale_bookings(parse_travel_date(before) if before else None)
        click.echo(f"Closed {len(ids)} booking(s).")

    return app


# Optional local entrypoint (useful for quick dev runs)
if __name__ == "__main__":
    app = create_app()
    # Socket.IO server (falls back to Werkzeug in dev)
    socketio.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        allow_unsafe_werkzeug=True,  # dev convenience
        debug=bool(os.environ.get("FLASK_DEBUG", "")),
    )
