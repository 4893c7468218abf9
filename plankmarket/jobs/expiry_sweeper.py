from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from plankmarket.extensions import db
from plankmarket.integrations.common import ProviderError
from plankmarket.integrations.payments.factory import get_payments_provider
from plankmarket.models import Listing, ListingPromotion, Offer, Order
from plankmarket.services.offer_service import OfferStatus, expire_offer
from plankmarket.services.order_service import cancel_unpaid_order
from plankmarket.utils.job_runs import record_job_run
from plankmarket.utils.unit_of_work import begin

ORDER_EXPIRY_HOURS = 24
EXPIRED_ORDER_NOTE = "Cancelled automatically: payment window expired"
EXPIRED_ORDER_RELEASE_REASON = "pending_order_expired"


def _now():
    return datetime.utcnow()


def expire_pending_orders(*, now: datetime | None = None, limit: int = 500) -> dict:
    """Cancel pending orders whose 24h payment window has lapsed.

    The scan is optimistic; each candidate is re-checked under its row lock
    in its own transaction, so a payment confirmed between scan and lock
    wins and a second run finds nothing left to do.
    """
    started = _now()
    now = now or started
    cutoff = now - timedelta(hours=ORDER_EXPIRY_HOURS)
    candidates = (
        db.session.query(Order.id)
        .filter(
            Order.status == "pending",
            Order.created_at < cutoff,
            Order.payment_status != "succeeded",
        )
        .order_by(Order.created_at.asc())
        .limit(int(limit))
        .all()
    )
    expired = 0
    errors = 0
    for (order_id,) in candidates:
        try:
            if cancel_unpaid_order(
                int(order_id),
                note=EXPIRED_ORDER_NOTE,
                reason=EXPIRED_ORDER_RELEASE_REASON,
                now=now,
            ):
                expired += 1
        except Exception:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("pending_order_expiry_failed order_id=%s", order_id)

    summary = {"expired": expired, "scanned": len(candidates), "cutoff": cutoff.isoformat(), "errors": errors}
    record_job_run(job_name="expire_pending_orders", ok=errors == 0, started_at=started, summary=summary)
    current_app.logger.info(
        "pending_orders_swept expired=%s scanned=%s errors=%s cutoff=%s",
        expired,
        len(candidates),
        errors,
        summary["cutoff"],
    )
    return summary


def promotion_refund_cents(promotion: ListingPromotion, listing: Listing | None) -> int:
    """Pro-rata refund for the promotion time a dead listing could not use."""
    if listing is None or (listing.status or "") not in ("expired", "sold"):
        return 0
    if listing.expires_at is None or listing.expires_at >= promotion.expires_at:
        return 0
    total = (promotion.expires_at - promotion.starts_at).total_seconds()
    if total <= 0:
        return 0
    used = (listing.expires_at - promotion.starts_at).total_seconds()
    unused = max(0.0, 1.0 - used / total)
    return int(round(float(promotion.price_paid or 0.0) * unused * 100))


def _deactivate_promotion(promotion_id: int, *, now: datetime) -> tuple[bool, int]:
    with begin() as tx:
        promotion = tx.locked(ListingPromotion, int(promotion_id))
        if promotion is None or not promotion.is_active or promotion.expires_at >= now:
            return False, 0
        promotion.is_active = False
        listing = tx.locked(Listing, int(promotion.listing_id))
        if listing is not None and (listing.promotion_expires_at is None or listing.promotion_expires_at <= now):
            listing.promotion_tier = None
            listing.promotion_expires_at = None
            listing.updated_at = now
        refund_cents = promotion_refund_cents(promotion, listing)
    return True, refund_cents


def _refund_promotion(promotion_id: int, amount_cents: int) -> bool:
    promotion = db.session.get(ListingPromotion, int(promotion_id))
    if promotion is None or not promotion.stripe_payment_intent_id or promotion.payment_status == "refunded":
        return False
    get_payments_provider().create_refund(
        payment_intent_id=promotion.stripe_payment_intent_id,
        amount_cents=int(amount_cents),
        metadata={"promotion_id": str(promotion.id), "reason": "listing_ended_early"},
        idempotency_key=f"promotion-refund-{int(promotion.id)}",
    )
    promotion.payment_status = "refunded"
    db.session.commit()
    return True


def expire_promotions(*, now: datetime | None = None) -> dict:
    """Deactivate lapsed promotions and refund unused time on dead listings.

    A refund failure is logged and counted; the promotion still ends, and
    the remaining promotions in the batch are processed.
    """
    started = _now()
    now = now or started
    ids = [
        row_id
        for (row_id,) in db.session.query(ListingPromotion.id)
        .filter(ListingPromotion.is_active.is_(True), ListingPromotion.expires_at < now)
        .order_by(ListingPromotion.id.asc())
        .all()
    ]
    expired = 0
    refunded = 0
    errors = 0
    for promotion_id in ids:
        try:
            done, refund_cents = _deactivate_promotion(promotion_id, now=now)
        except Exception:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("promotion_expiry_failed promotion_id=%s", promotion_id)
            continue
        if not done:
            continue
        expired += 1
        if refund_cents <= 0:
            continue
        try:
            if _refund_promotion(promotion_id, refund_cents):
                refunded += 1
        except ProviderError as e:
            db.session.rollback()
            errors += 1
            current_app.logger.warning("promotion_refund_failed promotion_id=%s code=%s", promotion_id, e.code)
        except Exception:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("promotion_refund_failed promotion_id=%s", promotion_id)

    summary = {"expired": expired, "refunded": refunded, "errors": errors}
    record_job_run(job_name="expire_promotions", ok=errors == 0, started_at=started, summary=summary)
    current_app.logger.info("promotions_swept expired=%s refunded=%s errors=%s", expired, refunded, errors)
    return summary


def expire_stale_offers(*, now: datetime | None = None, limit: int = 500) -> dict:
    started = _now()
    now = now or started
    candidates = (
        db.session.query(Offer.id)
        .filter(Offer.status.in_(tuple(OfferStatus.OPEN)), Offer.expires_at < now)
        .order_by(Offer.expires_at.asc())
        .limit(int(limit))
        .all()
    )
    expired = 0
    errors = 0
    for (offer_id,) in candidates:
        try:
            if expire_offer(int(offer_id), now=now):
                expired += 1
        except Exception:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("offer_expiry_failed offer_id=%s", offer_id)

    summary = {"expired": expired, "scanned": len(candidates), "errors": errors}
    record_job_run(job_name="expire_stale_offers", ok=errors == 0, started_at=started, summary=summary)
    current_app.logger.info("offers_swept expired=%s scanned=%s errors=%s", expired, len(candidates), errors)
    return summary


def expire_listings(*, now: datetime | None = None) -> dict:
    """Mark active listings past ``expires_at`` as expired."""
    now = now or _now()
    ids = [
        row_id
        for (row_id,) in db.session.query(Listing.id)
        .filter(Listing.status == "active", Listing.expires_at.isnot(None), Listing.expires_at < now)
        .all()
    ]
    expired = 0
    for listing_id in ids:
        with begin() as tx:
            listing = tx.locked(Listing, int(listing_id))
            if listing is None or listing.status != "active" or listing.expires_at is None or listing.expires_at >= now:
                continue
            listing.status = "expired"
            listing.updated_at = now
            expired += 1
    return {"expired": expired}


def run_once(*, limit: int = 500) -> dict:
    now = _now()
    return {
        "listings": expire_listings(now=now),
        "orders": expire_pending_orders(now=now, limit=limit),
        "promotions": expire_promotions(now=now),
        "offers": expire_stale_offers(now=now, limit=limit),
    }
