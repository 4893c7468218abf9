from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from plankmarket.extensions import db
from plankmarket.jobs.expiry_sweeper import (
    EXPIRED_ORDER_NOTE,
    expire_listings,
    expire_pending_orders,
    expire_promotions,
    expire_stale_offers,
    promotion_refund_cents,
    run_once,
)
from plankmarket.models import EscrowTransition, JobRun, Listing, ListingPromotion, Offer, Order
from plankmarket.services.offer_service import create_offer
from tests.base import SettlementTestCase


class PendingOrderSweepTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_seller()
        self.buyer = self.make_user()
        self.listing = self.make_listing(self.seller, total_sq_ft=1000.0)

    def test_stale_pending_orders_are_cancelled_once(self):
        stale = self.place_order(self.buyer, self.listing, 100)
        self.update_row(stale, created_at=datetime.utcnow() - timedelta(hours=25))
        fresh = self.place_order(self.buyer, self.listing, 100)
        paid = self.paid_order(self.buyer, self.listing, 100)
        self.update_row(paid, created_at=datetime.utcnow() - timedelta(hours=30))

        first = expire_pending_orders()
        self.assertEqual(first["expired"], 1)
        self.assertEqual(first["scanned"], 1)
        self.assertEqual(first["errors"], 0)

        stale = self.reload(Order, stale.id)
        self.assertEqual(stale.status, "cancelled")
        self.assertEqual(stale.payment_status, "failed")
        self.assertIn(EXPIRED_ORDER_NOTE, stale.notes)
        self.assertIn("[Inventory released: pending_order_expired]", stale.notes)
        self.assertEqual(stale.escrow_status, "refunded")
        self.assertEqual(
            [(t.to_status, t.idempotency_key) for t in EscrowTransition.query.filter_by(order_id=stale.id)],
            [("refunded", f"cancel-{stale.id}")],
        )
        self.assertEqual(self.reload(Order, fresh.id).status, "pending")
        self.assertEqual(self.reload(Order, paid.id).status, "confirmed")
        self.assertEqual(self.reload(Listing, self.listing.id).total_sq_ft, 800.0)

        second = expire_pending_orders()
        self.assertEqual(second["expired"], 0)
        self.assertEqual(second["scanned"], 0)
        self.assertEqual(self.reload(Listing, self.listing.id).total_sq_ft, 800.0)

    def test_order_paid_after_scan_is_left_alone(self):
        order = self.place_order(self.buyer, self.listing, 100)
        self.update_row(order, created_at=datetime.utcnow() - timedelta(hours=25), payment_status="succeeded")
        result = expire_pending_orders()
        self.assertEqual(result["expired"], 0)
        self.assertEqual(self.reload(Order, order.id).status, "pending")

    def test_cutoff_uses_explicit_clock(self):
        order = self.place_order(self.buyer, self.listing, 100)
        result = expire_pending_orders(now=datetime.utcnow() + timedelta(hours=24, minutes=1))
        self.assertEqual(result["expired"], 1)
        self.assertEqual(self.reload(Order, order.id).status, "cancelled")

    def test_each_sweep_records_a_job_run(self):
        run_once(limit=10)
        names = {row.job_name for row in JobRun.query.all()}
        self.assertEqual(names, {"expire_pending_orders", "expire_promotions", "expire_stale_offers"})
        row = JobRun.query.filter_by(job_name="expire_pending_orders").one()
        self.assertTrue(row.ok)
        self.assertEqual(row.summary()["expired"], 0)


class OfferSweepTestCase(SettlementTestCase):
    def test_stale_offers_expire(self):
        seller = self.make_seller()
        listing = self.make_listing(seller)
        stale = create_offer(buyer_id=self.make_user().id, listing_id=listing.id, price_per_sq_ft=3.0, quantity_sq_ft=10)
        live = create_offer(buyer_id=self.make_user().id, listing_id=listing.id, price_per_sq_ft=3.1, quantity_sq_ft=10)
        self.update_row(stale, expires_at=datetime.utcnow() - timedelta(minutes=1))

        result = expire_stale_offers()
        self.assertEqual(result, {"expired": 1, "scanned": 1, "errors": 0})
        self.assertEqual(self.reload(Offer, stale.id).status, "expired")
        self.assertEqual(self.reload(Offer, live.id).status, "pending")
        self.assertEqual(expire_stale_offers()["expired"], 0)


class PromotionSweepTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.now = datetime(2026, 3, 1, 12, 0, 0)
        self.seller = self.make_seller()
        self.listing = self.make_listing(
            self.seller,
            status="expired",
            expires_at=self.now - timedelta(days=5),
            promotion_tier="featured",
            promotion_expires_at=self.now - timedelta(hours=1),
        )

    def _promotion(self, **fields) -> ListingPromotion:
        promotion = ListingPromotion(
            listing_id=self.listing.id,
            seller_id=self.seller.id,
            tier="featured",
            duration_days=10,
            price_paid=fields.pop("price_paid", 100.0),
            starts_at=self.now - timedelta(days=10),
            expires_at=fields.pop("expires_at", self.now - timedelta(hours=1)),
            stripe_payment_intent_id="pi_promo_1",
            payment_status="succeeded",
            **fields,
        )
        db.session.add(promotion)
        db.session.commit()
        return promotion

    def test_refund_is_pro_rata_to_unused_time(self):
        promotion = self._promotion()
        self.assertEqual(promotion_refund_cents(promotion, self.listing), 4979)

    def test_no_refund_for_live_listing(self):
        promotion = self._promotion()
        self.update_row(self.listing, status="active")
        self.assertEqual(promotion_refund_cents(promotion, self.listing), 0)
        self.assertEqual(promotion_refund_cents(promotion, None), 0)

    def test_lapsed_promotion_is_deactivated_and_refunded(self):
        promotion = self._promotion()
        result = expire_promotions(now=self.now)
        self.assertEqual(result, {"expired": 1, "refunded": 1, "errors": 0})

        promotion = self.reload(ListingPromotion, promotion.id)
        self.assertFalse(promotion.is_active)
        self.assertEqual(promotion.payment_status, "refunded")
        listing = self.reload(Listing, self.listing.id)
        self.assertIsNone(listing.promotion_tier)

        refund = self.provider.calls_for("refund")[0]
        self.assertEqual(refund["amount_cents"], 4979)
        self.assertEqual(refund["idempotency_key"], f"promotion-refund-{promotion.id}")

        self.assertEqual(expire_promotions(now=self.now)["expired"], 0)

    def test_refund_failure_is_counted_and_sweep_continues(self):
        first = self._promotion()
        second = self._promotion(expires_at=self.now - timedelta(hours=2))
        self.provider.fail("refund")

        result = expire_promotions(now=self.now)
        self.assertEqual(result["expired"], 2)
        self.assertEqual(result["refunded"], 0)
        self.assertEqual(result["errors"], 2)
        for promotion_id in (first.id, second.id):
            promotion = self.reload(ListingPromotion, promotion_id)
            self.assertFalse(promotion.is_active)
            self.assertEqual(promotion.payment_status, "succeeded")
        run = JobRun.query.filter_by(job_name="expire_promotions").one()
        self.assertFalse(run.ok)

    def test_unexpired_promotion_is_kept(self):
        promotion = self._promotion(expires_at=self.now + timedelta(days=1))
        self.assertEqual(expire_promotions(now=self.now)["expired"], 0)
        self.assertTrue(self.reload(ListingPromotion, promotion.id).is_active)


class ListingSweepTestCase(SettlementTestCase):
    def test_listings_past_expiry_are_marked_expired(self):
        seller = self.make_seller()
        old = self.make_listing(seller, expires_at=datetime.utcnow() - timedelta(days=1))
        current = self.make_listing(seller, expires_at=datetime.utcnow() + timedelta(days=1))
        self.assertEqual(expire_listings(), {"expired": 1})
        self.assertEqual(self.reload(Listing, old.id).status, "expired")
        self.assertEqual(self.reload(Listing, current.id).status, "active")


if __name__ == "__main__":
    unittest.main()
