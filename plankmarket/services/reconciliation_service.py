from __future__ import annotations

import json
from datetime import datetime, timedelta

from plankmarket.extensions import db
from plankmarket.models import Order, ReconciliationReport

HELD_AFTER_DELIVERY_DAYS = 7


def _item(order: Order, issue: str, **extra) -> dict:
    out = {
        "order_id": int(order.id),
        "order_number": order.order_number,
        "issue": issue,
        "status": order.status,
        "payment_status": order.payment_status,
        "escrow_status": order.escrow_status,
    }
    out.update(extra)
    return out


def reconcile_escrow_ledger(*, now: datetime | None = None, held_after_delivery_days: int = HELD_AFTER_DELIVERY_DAYS) -> dict:
    """Scan orders for local state that disagrees with money movement.

    Read-only; the caller decides whether to persist the summary.
    """
    now = now or datetime.utcnow()
    stale_delivery = now - timedelta(days=int(held_after_delivery_days))
    orders = Order.query.order_by(Order.id.asc()).all()
    drift_items = []

    for order in orders:
        escrow = order.escrow_status or "held"
        payment = order.payment_status or "pending"
        status = order.status or "pending"

        if escrow == "released" and not order.stripe_transfer_id:
            drift_items.append(_item(order, "released_without_transfer"))
        if payment in ("refunded", "partially_refunded") and not order.stripe_refund_id:
            drift_items.append(_item(order, "refunded_without_refund_id"))
        if escrow == "refunded" and payment == "succeeded" and status != "cancelled":
            drift_items.append(_item(order, "escrow_refunded_payment_succeeded"))
        if status == "cancelled" and payment == "succeeded":
            drift_items.append(_item(order, "paid_after_cancellation"))
        if status in ("confirmed", "processing", "shipped", "delivered") and payment not in ("succeeded", "partially_refunded"):
            drift_items.append(_item(order, "fulfilment_without_payment"))
        if status == "delivered" and escrow == "held" and order.delivered_at and order.delivered_at < stale_delivery:
            drift_items.append(_item(order, "held_after_delivery", delivered_at=order.delivered_at.isoformat()))
        if status == "cancelled" and order.inventory_released_at is None:
            drift_items.append(_item(order, "cancelled_inventory_not_released"))
        if status == "pending" and payment == "succeeded":
            drift_items.append(_item(order, "succeeded_payment_still_pending"))

    return {
        "ok": True,
        "scope": "escrow_ledger",
        "checked_count": len(orders),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": now.isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "escrow_ledger")[:64],
        checked_count=int(summary.get("checked_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        summary_json=json.dumps(summary, default=str)[:200000],
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report


def latest_report() -> ReconciliationReport | None:
    return ReconciliationReport.query.order_by(ReconciliationReport.id.desc()).first()
