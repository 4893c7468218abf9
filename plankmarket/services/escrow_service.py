from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from plankmarket.extensions import db
from plankmarket.integrations.common import ProviderError
from plankmarket.integrations.payments.factory import get_payments_provider
from plankmarket.models import EscrowTransition, Order, User
from plankmarket.services.errors import EscrowError, RefundError
from plankmarket.services.notification_service import notify_user
from plankmarket.utils.events import log_event
from plankmarket.utils.fees import cents_to_money, money_to_cents
from plankmarket.utils.unit_of_work import UnitOfWork, begin


class EscrowStatus:
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"

    ALLOWED = {
        HELD: {RELEASED, REFUNDED},
        RELEASED: {REFUNDED},
        REFUNDED: set(),
    }


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount_refunded: float
    transfer_reversal_id: str | None = None
    full: bool = True

    def to_dict(self) -> dict:
        return {
            "refund_id": self.refund_id,
            "amount_refunded": self.amount_refunded,
            "transfer_reversal_id": self.transfer_reversal_id,
            "full": self.full,
        }


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None


def transition_escrow(
    order: Order,
    to_state: str,
    *,
    idempotency_key: str,
    actor=None,
    reason: str = "",
    processor_ref: str | None = None,
    metadata: dict | None = None,
) -> EscrowTransition:
    """Move ``order.escrow_status`` and append the audit row.

    Joins the caller's transaction. Replaying an idempotency key already
    recorded for the order returns the earlier row without moving anything.
    """
    if order is None:
        raise ValueError("order required")
    key = (idempotency_key or "").strip()[:160]
    if not key:
        raise ValueError("idempotency_key required")

    existing = EscrowTransition.query.filter_by(order_id=int(order.id), idempotency_key=key).first()
    if existing:
        return existing

    current = (order.escrow_status or EscrowStatus.HELD).strip().lower()
    target = (to_state or "").strip().lower()
    if target not in EscrowStatus.ALLOWED.get(current, set()):
        raise EscrowError(f"Escrow cannot move from {current} to {target}", error="INVALID_ESCROW_TRANSITION")

    actor_type, actor_id = _parse_actor(actor)
    row = EscrowTransition(
        order_id=int(order.id),
        from_status=current,
        to_status=target,
        actor_type=actor_type[:32],
        actor_id=actor_id,
        idempotency_key=key,
        processor_ref=processor_ref,
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {})[:4000],
        created_at=datetime.utcnow(),
    )
    order.escrow_status = target
    db.session.add(row)
    return row


def release_escrow_for_order(order_id: int, *, actor=None, uow: UnitOfWork | None = None) -> dict:
    """Pay the seller's snapshot payout once the carrier has the shipment.

    The transfer is requested under the order lock with a stable idempotency
    key; the order is marked released only after the processor accepts it,
    so a failed call leaves escrow held and the release can be retried.
    """
    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None:
            return {"released": False, "reason": "order_not_found"}
        if (order.escrow_status or "") != EscrowStatus.HELD:
            return {"released": False, "reason": f"escrow_{order.escrow_status}"}
        if (order.payment_status or "") != "succeeded":
            raise EscrowError("Order payment has not succeeded", error="PAYMENT_NOT_SUCCEEDED")

        seller = db.session.get(User, int(order.seller_id))
        if seller is None or not seller.stripe_account_id:
            raise EscrowError(
                f"Seller {order.seller_id} has no payout account connected",
                error="SELLER_ACCOUNT_MISSING",
            )

        amount_cents = money_to_cents(order.seller_payout)
        idempotency_key = f"escrow-release-{int(order.id)}"
        try:
            transfer = get_payments_provider().create_transfer(
                amount_cents=amount_cents,
                destination=seller.stripe_account_id,
                transfer_group=order.order_number,
                metadata={"order_id": str(order.id), "order_number": order.order_number},
                idempotency_key=idempotency_key,
            )
        except ProviderError as e:
            current_app.logger.warning("escrow_release_transfer_failed order_id=%s code=%s", order.id, e.code)
            raise EscrowError(f"Failed to transfer funds for order {order.order_number}", status=502, error=e.code)

        now = datetime.utcnow()
        order.stripe_transfer_id = transfer.transfer_id
        order.escrow_released_at = now
        order.updated_at = now
        transition_escrow(
            order,
            EscrowStatus.RELEASED,
            idempotency_key=idempotency_key,
            actor=actor,
            reason="carrier_pickup",
            processor_ref=transfer.transfer_id,
            metadata={"amount_cents": amount_cents},
        )
        notify_user(
            int(order.seller_id),
            kind="escrow_released",
            title="Funds Released",
            message=(
                f"Your shipment for order {order.order_number} has been picked up by the carrier. "
                f"${cents_to_money(amount_cents):.2f} has been released to your account."
            ),
            meta={"order_id": int(order.id)},
        )
        log_event(
            "escrow_released",
            subject_type="order",
            subject_id=order.id,
            idempotency_key=idempotency_key,
            metadata={"transfer_id": transfer.transfer_id, "amount_cents": amount_cents},
        )
        result = {
            "released": True,
            "order_id": int(order.id),
            "order_number": order.order_number,
            "payout_amount": float(order.seller_payout),
            "transfer_id": transfer.transfer_id,
        }

    current_app.logger.info("escrow_released order_id=%s transfer_id=%s", order_id, result["transfer_id"])
    return result


def process_order_refund(
    order_id: int,
    *,
    amount_cents: int | None = None,
    reason: str = "",
    actor=None,
    uow: UnitOfWork | None = None,
) -> RefundResult:
    """Refund an order, in full by default, reversing the payout if released.

    Missing payment reference or a payment that has not succeeded is a
    caller bug and raises ``RefundError`` before anything changes. Processor
    failures raise as well; the order is updated only after the refund
    exists at the processor.
    """
    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None:
            raise RefundError(f"Order {order_id} not found", status=404)
        if not order.stripe_payment_intent_id:
            raise RefundError(
                f"Order {order.order_number} has no payment intent, cannot refund",
                error="NO_PAYMENT_INTENT",
            )
        if (order.payment_status or "") != "succeeded":
            raise RefundError(
                f'Order {order.order_number} payment status is "{order.payment_status}", '
                "can only refund succeeded payments",
                error="PAYMENT_NOT_SUCCEEDED",
            )

        full_cents = money_to_cents(order.total_price)
        refund_cents = full_cents if amount_cents is None else int(amount_cents)
        if refund_cents <= 0:
            raise RefundError("Refund amount must be positive", status=400)
        if refund_cents > full_cents:
            raise RefundError("Refund amount exceeds the order total", status=400)

        reverse_transfer = bool(order.stripe_transfer_id) and order.escrow_status == EscrowStatus.RELEASED
        idempotency_key = f"refund-{int(order.id)}-{refund_cents}"
        try:
            refund = get_payments_provider().create_refund(
                payment_intent_id=order.stripe_payment_intent_id,
                amount_cents=refund_cents,
                reverse_transfer=reverse_transfer,
                metadata={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "reason": reason or "Admin-initiated refund",
                },
                idempotency_key=idempotency_key,
            )
        except ProviderError as e:
            current_app.logger.warning("order_refund_failed order_id=%s code=%s", order.id, e.code)
            raise RefundError(f"Refund failed for order {order.order_number}", status=502, error=e.code)

        full = refund_cents >= full_cents
        now = datetime.utcnow()
        order.payment_status = "refunded" if full else "partially_refunded"
        if full:
            order.status = "refunded"
        order.refunded_at = now
        order.refunded_amount = cents_to_money(refund_cents)
        order.stripe_refund_id = refund.refund_id
        order.updated_at = now
        if order.escrow_status in (EscrowStatus.HELD, EscrowStatus.RELEASED):
            transition_escrow(
                order,
                EscrowStatus.REFUNDED,
                idempotency_key=idempotency_key,
                actor=actor,
                reason=(reason or "refund")[:240],
                processor_ref=refund.refund_id,
                metadata={"amount_cents": refund_cents, "reverse_transfer": reverse_transfer},
            )

        amount_text = f"${cents_to_money(refund_cents):.2f}"
        message = (
            f"A {'full' if full else 'partial'} refund of {amount_text} has been issued for order "
            f"{order.order_number}.{f' Reason: {reason}' if reason else ''}"
        )
        notify_user(int(order.buyer_id), kind="system", title="Refund Processed", message=message, meta={"order_id": int(order.id)})
        notify_user(int(order.seller_id), kind="system", title="Order Refunded", message=message, meta={"order_id": int(order.id)})
        log_event(
            "order_refunded",
            subject_type="order",
            subject_id=order.id,
            idempotency_key=idempotency_key,
            metadata={"refund_id": refund.refund_id, "amount_cents": refund_cents, "full": full},
        )
        result = RefundResult(
            refund_id=refund.refund_id,
            amount_refunded=cents_to_money(refund_cents),
            transfer_reversal_id=refund.transfer_reversal_id,
            full=full,
        )

    current_app.logger.info(
        "order_refunded order_id=%s refund_id=%s amount_cents=%s full=%s",
        order_id,
        result.refund_id,
        refund_cents,
        full,
    )
    return result
