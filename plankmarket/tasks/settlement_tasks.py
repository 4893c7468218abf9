from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from plankmarket.services.errors import EscrowError


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    try:
        current_app.logger.info(json.dumps(payload, default=str))
    except Exception:
        pass


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _run_sweep(task, task_name: str, sweep, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = sweep()
        _task_log(
            task_name,
            status="ok" if not result.get("errors") else "partial",
            started_at=started,
            trace_id=trace_id,
            **result,
        )
        return result
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise


@shared_task(bind=True, name="plankmarket.tasks.settlement_tasks.expire_pending_orders", max_retries=3)
def expire_pending_orders_task(self, *, trace_id: str = ""):
    from plankmarket.jobs.expiry_sweeper import expire_pending_orders

    return _run_sweep(self, "expire_pending_orders", expire_pending_orders, trace_id=trace_id)


@shared_task(bind=True, name="plankmarket.tasks.settlement_tasks.expire_promotions", max_retries=3)
def expire_promotions_task(self, *, trace_id: str = ""):
    from plankmarket.jobs.expiry_sweeper import expire_listings, expire_promotions

    def _sweep():
        expire_listings()
        return expire_promotions()

    return _run_sweep(self, "expire_promotions", _sweep, trace_id=trace_id)


@shared_task(bind=True, name="plankmarket.tasks.settlement_tasks.expire_offers", max_retries=3)
def expire_offers_task(self, *, trace_id: str = ""):
    from plankmarket.jobs.expiry_sweeper import expire_stale_offers

    return _run_sweep(self, "expire_offers", expire_stale_offers, trace_id=trace_id)


@shared_task(bind=True, name="plankmarket.tasks.settlement_tasks.release_escrow", max_retries=8)
def release_escrow_task(self, *, order_id: int, trace_id: str = ""):
    """Carrier pickup: pay the seller, retrying processor failures."""
    started = time.perf_counter()
    from plankmarket.services.escrow_service import release_escrow_for_order

    try:
        result = release_escrow_for_order(int(order_id), actor={"type": "system"})
    except EscrowError as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "release_escrow",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                order_id=order_id,
                detail=exc.error,
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("release_escrow", status="failed", started_at=started, trace_id=trace_id, order_id=order_id, detail=exc.error)
        raise
    _task_log(
        "release_escrow",
        status="ok" if result.get("released") else "skipped",
        started_at=started,
        trace_id=trace_id,
        order_id=order_id,
        reason=result.get("reason", ""),
    )
    return result


@shared_task(bind=True, name="plankmarket.tasks.settlement_tasks.process_stripe_webhook", max_retries=5)
def process_stripe_webhook_task(self, *, event: dict, digest: str = "", source: str = "api/webhooks/stripe:queued", trace_id: str = ""):
    """Apply an already signature-verified processor event."""
    started = time.perf_counter()
    from plankmarket.services.webhook_service import process_stripe_event

    event_id = str((event or {}).get("id") or "")
    try:
        body, code = process_stripe_event(event or {}, digest=digest or None, source=source)
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("process_stripe_webhook", status="retrying", started_at=started, trace_id=trace_id, event_id=event_id, detail=str(exc), countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("process_stripe_webhook", status="failed", started_at=started, trace_id=trace_id, event_id=event_id, detail=str(exc))
        raise

    if int(code) >= 500 and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "process_stripe_webhook",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            event_id=event_id,
            status_code=int(code),
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(f"webhook_status_{int(code)}"), countdown=countdown)
    _task_log(
        "process_stripe_webhook",
        status="ok" if int(code) < 500 else "failed",
        started_at=started,
        trace_id=trace_id,
        event_id=event_id,
        status_code=int(code),
    )
    return {"ok": int(code) < 500, "event_id": event_id, "status_code": int(code), "body": body}
