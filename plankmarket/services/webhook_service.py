from __future__ import annotations

import hashlib
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from plankmarket.extensions import db
from plankmarket.integrations.common import WebhookSignatureError
from plankmarket.integrations.payments.factory import get_payments_provider
from plankmarket.models import WebhookEvent
from plankmarket.services.order_service import (
    apply_account_updated,
    apply_payment_failed,
    apply_payment_succeeded,
)
from plankmarket.utils.observability import get_request_id

HANDLED_EVENT_TYPES = (
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "account.updated",
)


def payload_hash(raw: bytes) -> str:
    return hashlib.sha256(raw or b"").hexdigest()


def verify_stripe_event(raw: bytes, signature: str | None) -> dict:
    """Signature-checked event dict; raises ``WebhookSignatureError``."""
    event = get_payments_provider().verify_webhook(raw or b"", signature)
    if not isinstance(event, dict) or not str(event.get("id") or "").strip():
        raise WebhookSignatureError("event_id_missing")
    if not str(event.get("type") or "").strip():
        raise WebhookSignatureError("event_type_missing")
    return event


def _claim(event_id: str, event_type: str, digest: str | None) -> tuple[WebhookEvent | None, bool]:
    """Record the event id; returns (row, replayed)."""
    row = WebhookEvent.query.filter_by(provider="stripe", event_id=event_id).first()
    if row is not None:
        return row, row.status in ("processed", "ignored")
    row = WebhookEvent(
        provider="stripe",
        event_id=event_id,
        event_type=event_type[:64],
        status="received",
        request_id=(get_request_id() or "")[:64] or None,
        payload_hash=digest,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert.
        db.session.rollback()
        row = WebhookEvent.query.filter_by(provider="stripe", event_id=event_id).first()
        return row, True
    return row, False


def _dispatch(event_type: str, obj: dict) -> dict:
    if event_type == "payment_intent.succeeded":
        return apply_payment_succeeded(obj.get("id"), metadata=obj.get("metadata") or {})
    if event_type == "payment_intent.payment_failed":
        return apply_payment_failed(obj.get("id"), metadata=obj.get("metadata") or {})
    if event_type == "account.updated":
        return apply_account_updated(obj)
    return {"applied": False, "reason": "unhandled_event_type"}


def process_stripe_event(event: dict, *, digest: str | None = None, source: str = "api/webhooks/stripe") -> tuple[dict, int]:
    """Apply one verified processor event at most once.

    Events are deduplicated on the processor's event id. A failed handler
    leaves the row ``failed`` so the processor's redelivery is processed
    again instead of being treated as a replay.
    """
    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    row, replayed = _claim(event_id, event_type, digest)
    if replayed:
        return {"ok": True, "replayed": True, "event_id": event_id}, 200

    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}

    try:
        result = _dispatch(event_type, obj)
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("stripe_webhook_processing_failed event_id=%s type=%s source=%s", event_id, event_type, source)
        row = WebhookEvent.query.filter_by(provider="stripe", event_id=event_id).first()
        if row is not None:
            row.status = "failed"
            row.error = f"{type(e).__name__}: {e}"[:1000]
            db.session.commit()
        return {"ok": False, "error": "WEBHOOK_PROCESSING_FAILED", "event_id": event_id}, 500

    row = WebhookEvent.query.filter_by(provider="stripe", event_id=event_id).first()
    if row is not None:
        row.status = "processed" if event_type in HANDLED_EVENT_TYPES else "ignored"
        row.processed_at = datetime.utcnow()
        row.error = None
        db.session.commit()

    current_app.logger.info(
        "stripe_webhook_processed event_id=%s type=%s applied=%s source=%s",
        event_id,
        event_type,
        bool(result.get("applied")),
        source,
    )
    return {"ok": True, "event_id": event_id, "type": event_type, "result": result}, 200
