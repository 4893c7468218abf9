from __future__ import annotations

from flask import g, jsonify

from plankmarket.extensions import db
from plankmarket.models import User
from plankmarket.utils.capabilities import can
from plankmarket.utils.observability import get_request_id


def current_user() -> User | None:
    """User resolved from the bearer token by the app's before_request hook."""
    uid = getattr(g, "auth_user_id", None)
    if uid is None:
        return None
    return db.session.get(User, int(uid))


def _denied(message: str, status: int):
    payload = {"ok": False, "message": message}
    rid = get_request_id()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), status


def require_user(capability: str | None = None):
    """Returns (user, None) or (None, error_response)."""
    user = current_user()
    if user is None:
        return None, _denied("Unauthorized", 401)
    if capability and not can(user, capability):
        return None, _denied("Forbidden", 403)
    return user, None
