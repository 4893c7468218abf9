from __future__ import annotations

from datetime import datetime

from flask import current_app

from plankmarket.extensions import db
from plankmarket.models import Dispute, Order, User
from plankmarket.services.errors import DisputeError
from plankmarket.services.escrow_service import process_order_refund
from plankmarket.services.moderation_service import enforce_violation_status, screen_text
from plankmarket.services.notification_service import notify_user
from plankmarket.utils.capabilities import OPEN_DISPUTE, RESOLVE_DISPUTE, can
from plankmarket.utils.events import log_event
from plankmarket.utils.unit_of_work import UnitOfWork, begin

DISPUTABLE_ORDER_STATUSES = ("confirmed", "processing", "shipped", "delivered")
OUTCOMES = ("resolved_buyer", "resolved_seller", "closed")
CLOSED_STATUSES = frozenset(OUTCOMES)


def open_dispute(order_id: int, *, user_id: int, reason: str, description: str, uow: UnitOfWork | None = None) -> Dispute:
    reason = (reason or "").strip()
    description = (description or "").strip()
    if not reason or len(reason) > 64:
        raise DisputeError("A dispute reason is required")
    if len(description) < 10 or len(description) > 5000:
        raise DisputeError("Describe the problem in 10 to 5000 characters")

    user = db.session.get(User, int(user_id))
    if user is None or not can(user, OPEN_DISPUTE):
        raise DisputeError("You can only create disputes for your own orders", status=403)
    enforce_violation_status(int(user.id))
    screen_text(description, user=user, content_type="message", field_name="dispute description", uow=uow)

    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None:
            raise DisputeError("Order not found", status=404)
        if int(user.id) not in (int(order.buyer_id), int(order.seller_id)):
            raise DisputeError("You can only create disputes for your own orders", status=403)
        if (order.status or "") not in DISPUTABLE_ORDER_STATUSES:
            raise DisputeError(f"Orders that are {order.status} cannot be disputed")
        if Dispute.query.filter_by(order_id=int(order.id)).first():
            raise DisputeError("A dispute already exists for this order", status=409)

        dispute = Dispute(
            order_id=int(order.id),
            initiator_id=int(user.id),
            reason=reason,
            description=description,
            status="open",
        )
        tx.add(dispute)
        tx.flush()
        other = int(order.seller_id) if int(user.id) == int(order.buyer_id) else int(order.buyer_id)
        notify_user(
            other,
            kind="dispute_opened",
            title="Dispute Opened",
            message=f"A dispute was opened on order {order.order_number}: {reason}",
            meta={"order_id": int(order.id), "dispute_id": int(dispute.id)},
        )
        log_event("dispute_opened", actor_user_id=int(user.id), subject_type="order", subject_id=order.id)

    current_app.logger.info("dispute_opened dispute_id=%s order_id=%s user_id=%s", dispute.id, order_id, user_id)
    return dispute


def _admin(admin_id: int) -> User:
    admin = db.session.get(User, int(admin_id))
    if admin is None or not can(admin, RESOLVE_DISPUTE):
        raise DisputeError("Admin access required", status=403)
    return admin


def mark_under_review(dispute_id: int, *, admin_id: int) -> Dispute:
    _admin(admin_id)
    with begin() as tx:
        dispute = tx.locked(Dispute, int(dispute_id))
        if dispute is None:
            raise DisputeError("Dispute not found", status=404)
        if dispute.status != "open":
            raise DisputeError("Only open disputes can be put under review")
        dispute.status = "under_review"
        dispute.updated_at = datetime.utcnow()
    return dispute


def resolve_dispute(
    dispute_id: int,
    *,
    admin_id: int,
    outcome: str,
    resolution: str,
    refund_amount_cents: int | None = None,
) -> dict:
    """Close a dispute; a buyer win refunds the order in the same transaction."""
    admin = _admin(admin_id)
    outcome = (outcome or "").strip().lower()
    resolution = (resolution or "").strip()
    if outcome not in OUTCOMES:
        raise DisputeError(f"outcome must be one of {', '.join(OUTCOMES)}")
    if len(resolution) < 10 or len(resolution) > 2000:
        raise DisputeError("Resolution must be 10 to 2000 characters")

    refund = None
    with begin() as tx:
        dispute = tx.locked(Dispute, int(dispute_id))
        if dispute is None:
            raise DisputeError("Dispute not found", status=404)
        if dispute.status in CLOSED_STATUSES:
            raise DisputeError("This dispute has already been resolved", status=409)

        if outcome == "resolved_buyer":
            refund = process_order_refund(
                int(dispute.order_id),
                amount_cents=refund_amount_cents,
                reason=resolution,
                actor={"type": "admin", "id": int(admin.id)},
                uow=tx,
            )

        now = datetime.utcnow()
        dispute.status = outcome
        dispute.resolution = resolution
        dispute.resolved_by = int(admin.id)
        dispute.resolved_at = now
        dispute.updated_at = now
        order = db.session.get(Order, int(dispute.order_id))
        for party in (int(order.buyer_id), int(order.seller_id)):
            notify_user(
                party,
                kind="dispute_resolved",
                title="Dispute Resolved",
                message=f"The dispute on order {order.order_number} was resolved: {resolution}",
                meta={"order_id": int(order.id), "dispute_id": int(dispute.id), "outcome": outcome},
            )
        log_event(
            "dispute_resolved",
            actor_user_id=int(admin.id),
            subject_type="dispute",
            subject_id=dispute.id,
            metadata={"outcome": outcome},
        )

    current_app.logger.info("dispute_resolved dispute_id=%s outcome=%s refund=%s", dispute_id, outcome, bool(refund))
    return {"dispute": dispute.to_dict(), "refund": refund.to_dict() if refund else None}
