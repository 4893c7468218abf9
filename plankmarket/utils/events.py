from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from plankmarket.extensions import db
from plankmarket.models import PlatformEvent
from plankmarket.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Best-effort audit event.

    Written inside a savepoint on the current session so a failed insert
    never aborts the caller's transaction. The caller's commit persists it.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or "").strip()[:32] or None,
            subject_id=str(subject_id)[:64] if subject_id is not None else None,
            request_id=(get_request_id() or "")[:80] or None,
            idempotency_key=key,
            severity=(severity or "INFO").strip().upper()[:16],
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":")),
        )
        with db.session.begin_nested():
            db.session.add(event)
        return event
    except IntegrityError:
        if key:
            return PlatformEvent.query.filter_by(idempotency_key=key).first()
        return None
    except Exception:
        if has_app_context():
            current_app.logger.warning("platform_event_write_failed event_type=%s", event_type)
        return None
