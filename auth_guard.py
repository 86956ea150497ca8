# auth_guard.py
from __future__ import annotations

import jwt
from functools import wraps
from datetime import datetime, timezone, timedelta

from flask import request, jsonify, g, current_app

from db import db
from models.user import User

__all__ = ["require_role", "issue_token"]


def issue_token(user: User, *, ttl_hours: int | None = None) -> str:
    """
    Mint an HS256 bearer token for `user`. Login lives outside this service;
    this is what it (and the tests) hand out.
    """
    hours = ttl_hours if ttl_hours is not None else int(current_app.config.get("JWT_TTL_HOURS", 24))
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user.id,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm="HS256")


def _unauthenticated(msg: str):
    return jsonify(error=msg, code="UNAUTHENTICATED"), 401


def require_role(*roles):
    """
    Usage:
      @require_role()                          -> any authenticated user
      @require_role("supervisor")              -> only supervisors (or admin)
      @require_role("driver", "supervisor")    -> driver or supervisor (or admin)
    """
    # Support passing a single list/tuple as well
    if len(roles) == 1 and isinstance(roles[0], (list, tuple, set)):
        roles = tuple(roles[0])
    allowed = {str(r).lower() for r in roles if r}

    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer "):
                return _unauthenticated("Missing token")

            token = auth.split(" ", 1)[1]
            try:
                payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=["HS256"])
                uid = payload.get("user_id")
                user = db.session.get(User, uid) if uid is not None else None
                if not user:
                    return _unauthenticated("User not found")

                # Stash user for downstream handlers
                role = (user.role or "").lower()
                g.user = user  # type: ignore[attr-defined]
                g.role = role  # type: ignore[attr-defined]

                current_app.logger.info(
                    "[guard] %s %s uid=%s user=%s role=%s bus=%s ip=%s",
                    request.method,
                    request.path,
                    user.id,
                    (user.username or ""),
                    role,
                    (user.assigned_bus_id if user.assigned_bus_id is not None else "—"),
                    request.remote_addr,
                )

                # Role check (admin bypass)
                if allowed and role not in allowed and role != "admin":
                    return jsonify(error="Insufficient permissions", code="FORBIDDEN"), 403

            except jwt.ExpiredSignatureError:
                return _unauthenticated("Token has expired")
            except jwt.InvalidTokenError:
                return _unauthenticated("Invalid token")

            return f(*args, **kwargs)

        return wrapped

    return decorator
