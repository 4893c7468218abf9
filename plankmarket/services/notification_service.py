from __future__ import annotations

import json

from flask import current_app

from plankmarket.extensions import db
from plankmarket.models import Notification


def notify_user(user_id: int | None, *, kind: str, title: str, message: str, meta: dict | None = None) -> Notification | None:
    """Queue an in-app notification for the dispatcher.

    Best-effort: runs in a savepoint of the current transaction, and a
    failure is logged without disturbing the caller.
    """
    if not user_id:
        return None
    try:
        row = Notification(
            user_id=int(user_id),
            channel="in_app",
            type=(kind or "system")[:48],
            title=(title or "")[:160],
            message=message or "",
            status="queued",
            meta=json.dumps(meta or {}, separators=(",", ":"), default=str),
        )
        with db.session.begin_nested():
            db.session.add(row)
        return row
    except Exception:
        current_app.logger.exception("notification_queue_failed user_id=%s kind=%s", user_id, kind)
        return None
