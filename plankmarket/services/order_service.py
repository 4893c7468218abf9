from __future__ import annotations

import os
import secrets
import string
from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from plankmarket.extensions import db
from plankmarket.integrations.common import ProviderError
from plankmarket.integrations.payments.factory import get_payments_provider
from plankmarket.models import Offer, Order, User
from plankmarket.services.errors import EscrowError, OrderError
from plankmarket.services.escrow_service import (
    EscrowStatus,
    process_order_refund,
    release_escrow_for_order,
    transition_escrow,
)
from plankmarket.services.inventory_service import release_reserved_inventory, reserve_inventory
from plankmarket.services.moderation_service import enforce_violation_status
from plankmarket.services.notification_service import notify_user
from plankmarket.utils.capabilities import BUY, FULFIL_ORDER, can
from plankmarket.utils.events import log_event
from plankmarket.utils.fees import compute_order_fees, money_to_cents, round2
from plankmarket.utils.unit_of_work import UnitOfWork, begin

VALID_STATUS_TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered",),
    "delivered": ("refunded",),
    "cancelled": (),
    "refunded": (),
}

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

_SHIPPING_FIELDS = ("name", "address", "city", "state", "zip")


@dataclass
class CheckoutResult:
    order: Order
    client_secret: str | None = None

    def to_dict(self) -> dict:
        return {"order": self.order.to_dict(), "client_secret": self.client_secret}


def generate_order_number() -> str:
    return "PM-" + "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(8))


def _unique_order_number() -> str:
    for _ in range(5):
        candidate = generate_order_number()
        if not Order.query.filter_by(order_number=candidate).first():
            return candidate
    raise OrderError("Could not allocate an order number, please retry", status=503)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _get_user(user_id: int) -> User:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise OrderError("User not found", status=404)
    return user


def _shipping_columns(shipping: dict | None) -> dict:
    shipping = shipping or {}
    out = {}
    for field in _SHIPPING_FIELDS:
        value = shipping.get(field)
        out[f"shipping_{field}"] = str(value).strip()[:255] if value is not None else None
    return out


def _parse_shipping_price(value) -> float:
    try:
        price = float(value or 0.0)
    except (TypeError, ValueError):
        raise OrderError("Shipping price must be a number")
    if price < 0 or price != price:
        raise OrderError("Shipping price must not be negative")
    return round2(price)


def _build_order(*, listing, buyer_id: int, quantity: float, price_per_sq_ft: float, shipping_price: float, shipping: dict | None, offer_id=None) -> Order:
    subtotal = round2(quantity * price_per_sq_ft)
    fees = compute_order_fees(subtotal, shipping_price)
    now = datetime.utcnow()
    return Order(
        order_number=_unique_order_number(),
        listing_id=int(listing.id),
        buyer_id=int(buyer_id),
        seller_id=int(listing.seller_id),
        offer_id=int(offer_id) if offer_id is not None else None,
        quantity_sq_ft=quantity,
        price_per_sq_ft=price_per_sq_ft,
        subtotal=fees.subtotal,
        shipping_price=fees.shipping,
        buyer_fee=fees.buyer_fee,
        seller_fee=fees.seller_fee,
        total_price=fees.total_charge,
        seller_payout=fees.seller_payout,
        status="pending",
        payment_status="pending",
        escrow_status=EscrowStatus.HELD,
        created_at=now,
        updated_at=now,
        **_shipping_columns(shipping),
    )


def attach_payment_intent(order_id: int) -> str | None:
    """Open the processor charge for a freshly committed order.

    If the processor refuses, the order is cancelled on the spot and its
    inventory handed back, rather than waiting for the 24h sweep.
    """
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise OrderError("Order not found", status=404)
    try:
        intent = get_payments_provider().create_payment_intent(
            amount_cents=money_to_cents(order.total_price),
            metadata={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "buyer_id": str(order.buyer_id),
                "seller_id": str(order.seller_id),
            },
            idempotency_key=f"order-{int(order.id)}-payment-intent",
        )
    except ProviderError as e:
        current_app.logger.warning("payment_intent_create_failed order_id=%s code=%s", order.id, e.code)
        cancel_unpaid_order(int(order.id), note="Cancelled automatically: payment could not be initialized", reason="payment_intent_failed")
        raise OrderError("Payment could not be initialized, please try again", status=502, error=e.code)

    order.stripe_payment_intent_id = intent.payment_intent_id
    db.session.commit()
    return intent.client_secret


def create_order(
    *,
    buyer_id: int,
    listing_id: int,
    quantity_sq_ft,
    shipping_price=0,
    shipping: dict | None = None,
    uow: UnitOfWork | None = None,
) -> CheckoutResult:
    """Buy-now checkout at the listing's ask price.

    Reservation and insert share one unit of work. The payment intent is
    opened after commit when this call owns the unit; a caller passing its
    own ``uow`` opens it with :func:`attach_payment_intent` after committing.
    """
    buyer = _get_user(buyer_id)
    if not can(buyer, BUY):
        raise OrderError("Your account cannot place orders", status=403)
    enforce_violation_status(int(buyer.id))
    freight = _parse_shipping_price(shipping_price)
    try:
        qty = float(quantity_sq_ft)
    except (TypeError, ValueError):
        raise OrderError("Quantity must be a number")

    with begin(uow) as tx:
        listing = reserve_inventory(int(listing_id), qty, buyer_id=int(buyer.id), uow=tx)
        order = _build_order(
            listing=listing,
            buyer_id=int(buyer.id),
            quantity=round(qty, 4),
            price_per_sq_ft=float(listing.ask_price_per_sq_ft),
            shipping_price=freight,
            shipping=shipping,
        )
        tx.add(order)
        tx.flush()
        log_event("order_created", actor_user_id=int(buyer.id), subject_type="order", subject_id=order.id)

    current_app.logger.info(
        "order_created order_id=%s order_number=%s listing_id=%s quantity=%s total=%s",
        order.id,
        order.order_number,
        listing_id,
        order.quantity_sq_ft,
        order.total_price,
    )
    client_secret = attach_payment_intent(int(order.id)) if uow is None else None
    return CheckoutResult(order=order, client_secret=client_secret)


def create_order_from_offer(
    *,
    buyer_id: int,
    offer_id: int,
    shipping_price=0,
    shipping: dict | None = None,
    uow: UnitOfWork | None = None,
) -> CheckoutResult:
    buyer = _get_user(buyer_id)
    enforce_violation_status(int(buyer.id))
    freight = _parse_shipping_price(shipping_price)

    with begin(uow) as tx:
        offer = tx.locked(Offer, int(offer_id))
        if offer is None:
            raise OrderError("Offer not found", status=404)
        if int(offer.buyer_id) != int(buyer.id):
            raise OrderError("You can only create orders from your own offers", status=403)
        if (offer.status or "") != "accepted":
            raise OrderError("Only accepted offers can be converted to orders")
        if offer.order_id is not None:
            raise OrderError("An order has already been created from this offer", status=409)
        if offer.expires_at and datetime.utcnow() > offer.expires_at:
            raise OrderError("This offer has expired")

        listing = reserve_inventory(int(offer.listing_id), float(offer.quantity_sq_ft), buyer_id=int(buyer.id), uow=tx)
        order = _build_order(
            listing=listing,
            buyer_id=int(buyer.id),
            quantity=round(float(offer.quantity_sq_ft), 4),
            price_per_sq_ft=float(offer.price_per_sq_ft),
            shipping_price=freight,
            shipping=shipping,
            offer_id=int(offer.id),
        )
        tx.add(order)
        tx.flush()
        offer.order_id = int(order.id)
        log_event(
            "order_created",
            actor_user_id=int(buyer.id),
            subject_type="order",
            subject_id=order.id,
            metadata={"offer_id": int(offer.id)},
        )

    current_app.logger.info("order_created_from_offer order_id=%s offer_id=%s", order.id, offer_id)
    client_secret = attach_payment_intent(int(order.id)) if uow is None else None
    return CheckoutResult(order=order, client_secret=client_secret)


def cancel_unpaid_order(order_id: int, *, note: str, reason: str, now: datetime | None = None, uow: UnitOfWork | None = None) -> bool:
    """Cancel an order that never got paid, close its escrow and give its inventory back.

    Re-checks under the order lock; an order that got paid or left
    ``pending`` in the meantime is left alone and ``False`` is returned.
    """
    now = now or datetime.utcnow()
    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None or (order.status or "") != "pending" or (order.payment_status or "") == "succeeded":
            return False
        order.status = "cancelled"
        order.payment_status = "failed"
        order.cancelled_at = now
        order.updated_at = now
        order.append_note(note)
        release_reserved_inventory(int(order.id), reason, uow=tx)
        if order.escrow_status == EscrowStatus.HELD:
            transition_escrow(
                order,
                EscrowStatus.REFUNDED,
                idempotency_key=f"cancel-{int(order.id)}",
                actor={"type": "system"},
                reason=reason,
            )
    return True


def update_order_status(
    order_id: int,
    status: str,
    *,
    actor_id: int,
    tracking_number: str | None = None,
    carrier: str | None = None,
    notes: str | None = None,
    uow: UnitOfWork | None = None,
) -> Order:
    """Seller (or admin) fulfilment move along ``VALID_STATUS_TRANSITIONS``."""
    actor = _get_user(actor_id)
    target = (status or "").strip().lower()
    if target not in VALID_STATUS_TRANSITIONS:
        raise OrderError(f"Unknown order status {status!r}")
    if not can(actor, FULFIL_ORDER):
        raise OrderError("Order not found", status=404)

    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None or ((actor.role or "") != "admin" and int(order.seller_id) != int(actor.id)):
            raise OrderError("Order not found", status=404)

        current = order.status or "pending"
        if target not in VALID_STATUS_TRANSITIONS.get(current, ()):
            raise OrderError(f'Cannot transition order from "{current}" to "{target}"')
        if target == "shipped" and not (tracking_number or order.tracking_number):
            raise OrderError("A tracking number is required to mark an order shipped")

        now = datetime.utcnow()
        if target == "cancelled":
            _cancel_for_seller(order, actor=actor, uow=tx)
        if target == "refunded":
            process_order_refund(int(order.id), reason="Refund after delivery", actor={"type": actor.role, "id": actor.id}, uow=tx)

        order.status = target
        order.updated_at = now
        if tracking_number:
            order.tracking_number = str(tracking_number).strip()[:120]
        if carrier:
            order.carrier = str(carrier).strip()[:120]
        if notes:
            order.append_note(str(notes).strip())
        if target == "confirmed":
            order.confirmed_at = now
        elif target == "shipped":
            order.shipped_at = now
        elif target == "delivered":
            order.delivered_at = now
        elif target == "cancelled":
            order.cancelled_at = now
        if target == "cancelled":
            release_reserved_inventory(int(order.id), "seller_cancelled_before_delivery", uow=tx)

        notify_user(
            int(order.buyer_id),
            kind="order_status",
            title="Order Updated",
            message=f"Order {order.order_number} is now {target}.",
            meta={"order_id": int(order.id), "status": target},
        )
        log_event(
            "order_status_changed",
            actor_user_id=int(actor.id),
            subject_type="order",
            subject_id=order.id,
            metadata={"from": current, "to": target},
        )

    current_app.logger.info("order_status_changed order_id=%s from=%s to=%s actor_id=%s", order_id, current, target, actor_id)
    if target == "shipped":
        schedule_escrow_release(int(order.id))
    return order


def _cancel_for_seller(order: Order, *, actor: User, uow: UnitOfWork) -> None:
    actor_ref = {"type": actor.role or "seller", "id": int(actor.id)}
    if (order.payment_status or "") == "succeeded":
        process_order_refund(int(order.id), reason="Order cancelled before delivery", actor=actor_ref, uow=uow)
    elif order.escrow_status == EscrowStatus.HELD:
        transition_escrow(
            order,
            EscrowStatus.REFUNDED,
            idempotency_key=f"cancel-{int(order.id)}",
            actor=actor_ref,
            reason="cancelled_before_payment",
        )


def schedule_escrow_release(order_id: int) -> dict:
    """Carrier pickup hook: release escrow on the worker or inline."""
    if _truthy(os.getenv("ESCROW_RELEASE_QUEUE")):
        try:
            from plankmarket.tasks.settlement_tasks import release_escrow_task

            release_escrow_task.delay(order_id=int(order_id))
            return {"queued": True, "order_id": int(order_id)}
        except Exception:
            current_app.logger.exception("escrow_release_enqueue_failed order_id=%s", order_id)
    try:
        return release_escrow_for_order(int(order_id), actor={"type": "system"})
    except EscrowError as e:
        # Escrow stays held; the pickup endpoint or reconciliation retries it.
        current_app.logger.warning("escrow_release_deferred order_id=%s error=%s", order_id, e.error)
        return {"released": False, "reason": e.error}


def _order_for_intent(payment_intent_id: str | None, metadata: dict | None, tx: UnitOfWork) -> Order | None:
    order = None
    if payment_intent_id:
        order = Order.query.filter_by(stripe_payment_intent_id=payment_intent_id).first()
    if order is None:
        raw_id = (metadata or {}).get("order_id")
        try:
            order = db.session.get(Order, int(raw_id)) if raw_id is not None else None
        except (TypeError, ValueError):
            order = None
    if order is None:
        return None
    return tx.locked(Order, int(order.id))


def apply_payment_succeeded(payment_intent_id: str | None, *, metadata: dict | None = None, uow: UnitOfWork | None = None) -> dict:
    """Processor reports the charge captured.

    Only a still-pending order is confirmed. A capture landing on an order
    the sweeper already cancelled is recorded for refund review instead of
    reviving the order, whose inventory is already back on the listing.
    """
    with begin(uow) as tx:
        order = _order_for_intent(payment_intent_id, metadata, tx)
        if order is None:
            return {"applied": False, "reason": "order_not_found"}
        if (order.payment_status or "") == "succeeded":
            return {"applied": False, "reason": "already_succeeded", "order_id": int(order.id)}

        now = datetime.utcnow()
        if (order.status or "") != "pending":
            order.payment_status = "succeeded"
            order.updated_at = now
            order.append_note(f"[Payment succeeded after {order.status}: refund review required]")
            log_event(
                "payment_after_cancellation",
                subject_type="order",
                subject_id=order.id,
                severity="WARN",
                idempotency_key=f"payment-after-cancel-{int(order.id)}",
                metadata={"payment_intent_id": payment_intent_id, "status": order.status},
            )
            current_app.logger.warning("payment_succeeded_on_closed_order order_id=%s status=%s", order.id, order.status)
            return {"applied": False, "reason": "order_not_pending", "order_id": int(order.id), "flagged": True}

        order.payment_status = "succeeded"
        order.status = "confirmed"
        order.confirmed_at = now
        order.updated_at = now
        notify_user(
            int(order.seller_id),
            kind="order_new",
            title="New Order",
            message=f"Order {order.order_number} has been paid and is ready to fulfil.",
            meta={"order_id": int(order.id)},
        )
        notify_user(
            int(order.buyer_id),
            kind="order_confirmed",
            title="Order Confirmed",
            message=f"Payment received for order {order.order_number}.",
            meta={"order_id": int(order.id)},
        )
        result = {"applied": True, "order_id": int(order.id)}

    current_app.logger.info("payment_succeeded order_id=%s payment_intent_id=%s", result["order_id"], payment_intent_id)
    return result


def apply_payment_failed(payment_intent_id: str | None, *, metadata: dict | None = None, uow: UnitOfWork | None = None) -> dict:
    with begin(uow) as tx:
        order = _order_for_intent(payment_intent_id, metadata, tx)
        if order is None:
            return {"applied": False, "reason": "order_not_found"}
        if (order.payment_status or "") != "pending":
            return {"applied": False, "reason": f"payment_{order.payment_status}", "order_id": int(order.id)}
        order.payment_status = "failed"
        order.updated_at = datetime.utcnow()
        result = {"applied": True, "order_id": int(order.id)}

    current_app.logger.info("payment_failed order_id=%s payment_intent_id=%s", result["order_id"], payment_intent_id)
    return result


def apply_account_updated(account: dict) -> dict:
    """Seller payout account status from the processor."""
    metadata = account.get("metadata") or {}
    user = None
    raw_id = metadata.get("user_id") or metadata.get("userId")
    if raw_id is not None:
        try:
            user = db.session.get(User, int(raw_id))
        except (TypeError, ValueError):
            user = None
    if user is None and account.get("id"):
        user = User.query.filter_by(stripe_account_id=str(account.get("id"))).first()
    if user is None:
        return {"applied": False, "reason": "user_not_found"}

    complete = bool(account.get("charges_enabled")) and bool(account.get("payouts_enabled"))
    user.stripe_onboarding_complete = complete
    if account.get("id") and not user.stripe_account_id:
        user.stripe_account_id = str(account.get("id"))
    db.session.commit()
    return {"applied": True, "user_id": int(user.id), "onboarding_complete": complete}


def get_order_for_user(order_id: int, user: User) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise OrderError("Order not found", status=404)
    if (user.role or "") != "admin" and int(user.id) not in (int(order.buyer_id), int(order.seller_id)):
        raise OrderError("Order not found", status=404)
    return order
