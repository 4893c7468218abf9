from __future__ import annotations

import os

from flask import Blueprint, current_app, jsonify, request

from plankmarket.extensions import db
from plankmarket.integrations.common import WebhookSignatureError
from plankmarket.services.webhook_service import payload_hash, process_stripe_event, verify_stripe_event
from plankmarket.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _queue_enabled() -> bool:
    return (os.getenv("STRIPE_WEBHOOK_QUEUE") or "").strip().lower() in ("1", "true", "yes", "on")


@webhooks_bp.post("/stripe")
def stripe_webhook():
    raw = request.get_data(cache=True) or b""
    signature = request.headers.get("Stripe-Signature")
    try:
        event = verify_stripe_event(raw, signature)
    except WebhookSignatureError as e:
        current_app.logger.warning("stripe_webhook_rejected reason=%s", e)
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "message": "Invalid webhook signature"}), 400

    digest = payload_hash(raw)
    if _queue_enabled():
        try:
            from plankmarket.tasks.settlement_tasks import process_stripe_webhook_task

            process_stripe_webhook_task.delay(
                event=event,
                digest=digest,
                source="api/webhooks/stripe:queued",
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except Exception:
            db.session.rollback()
            current_app.logger.exception("stripe_webhook_enqueue_failed event_id=%s", event.get("id"))

    body, status = process_stripe_event(event, digest=digest, source="api/webhooks/stripe")
    return jsonify(body), int(status)
