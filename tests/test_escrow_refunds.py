from __future__ import annotations

import unittest

from plankmarket.extensions import db
from plankmarket.models import EscrowTransition, Notification, Order
from plankmarket.services.errors import EscrowError, RefundError
from plankmarket.services.escrow_service import (
    EscrowStatus,
    process_order_refund,
    release_escrow_for_order,
    transition_escrow,
)
from plankmarket.services.order_service import create_order
from plankmarket.utils.unit_of_work import UnitOfWork
from tests.base import SettlementTestCase


class EscrowReleaseTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_seller()
        self.buyer = self.make_user()
        self.listing = self.make_listing(self.seller, total_sq_ft=1000.0, ask=4.0)

    def test_release_pays_snapshot_payout_once(self):
        order = self.paid_order(self.buyer, self.listing)

        first = release_escrow_for_order(order.id, actor={"type": "admin", "id": 1})
        self.assertTrue(first["released"])
        self.assertEqual(first["payout_amount"], 380.1)

        second = release_escrow_for_order(order.id)
        self.assertEqual(second, {"released": False, "reason": "escrow_released"})

        transfers = self.provider.calls_for("transfer")
        self.assertEqual(len(transfers), 1)
        self.assertEqual(transfers[0]["idempotency_key"], f"escrow-release-{order.id}")

        rows = EscrowTransition.query.filter_by(order_id=order.id).all()
        self.assertEqual([(r.from_status, r.to_status) for r in rows], [("held", "released")])
        self.assertEqual(rows[0].processor_ref, first["transfer_id"])
        self.assertEqual(
            Notification.query.filter_by(user_id=self.seller.id, type="escrow_released").count(),
            1,
        )

    def test_release_requires_successful_payment(self):
        order = self.place_order(self.buyer, self.listing)
        with self.assertRaises(EscrowError) as ctx:
            release_escrow_for_order(order.id)
        self.assertEqual(ctx.exception.error, "PAYMENT_NOT_SUCCEEDED")
        self.assertEqual(self.reload(Order, order.id).escrow_status, "held")

    def test_release_requires_payout_account(self):
        order = self.paid_order(self.buyer, self.listing)
        self.update_row(self.seller, stripe_account_id=None)
        with self.assertRaises(EscrowError) as ctx:
            release_escrow_for_order(order.id)
        self.assertEqual(ctx.exception.error, "SELLER_ACCOUNT_MISSING")

    def test_transfer_failure_leaves_escrow_held(self):
        order = self.paid_order(self.buyer, self.listing)
        self.provider.fail("transfer")
        with self.assertRaises(EscrowError) as ctx:
            release_escrow_for_order(order.id)
        self.assertEqual(ctx.exception.status, 502)
        stored = self.reload(Order, order.id)
        self.assertEqual(stored.escrow_status, "held")
        self.assertIsNone(stored.stripe_transfer_id)

        self.provider.heal()
        self.assertTrue(release_escrow_for_order(order.id)["released"])

    def test_missing_order(self):
        self.assertEqual(release_escrow_for_order(4242), {"released": False, "reason": "order_not_found"})

    def test_transition_table(self):
        order = self.place_order(self.buyer, self.listing)
        transition_escrow(order, EscrowStatus.REFUNDED, idempotency_key="t-1")
        db.session.commit()
        with self.assertRaises(EscrowError) as ctx:
            transition_escrow(order, EscrowStatus.RELEASED, idempotency_key="t-2")
        self.assertEqual(ctx.exception.error, "INVALID_ESCROW_TRANSITION")

        replay = transition_escrow(order, EscrowStatus.REFUNDED, idempotency_key="t-1")
        self.assertEqual(replay.to_status, "refunded")
        self.assertEqual(EscrowTransition.query.filter_by(order_id=order.id).count(), 1)

    def test_transition_requires_key(self):
        order = self.place_order(self.buyer, self.listing)
        with self.assertRaises(ValueError):
            transition_escrow(order, EscrowStatus.RELEASED, idempotency_key="  ")


class RefundTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_seller()
        self.buyer = self.make_user()
        self.listing = self.make_listing(self.seller, total_sq_ft=1000.0, ask=4.0)

    def test_full_refund_before_release(self):
        order = self.paid_order(self.buyer, self.listing)
        result = process_order_refund(order.id, reason="Wrong colour batch")

        self.assertTrue(result.full)
        self.assertEqual(result.amount_refunded, 412.0)
        self.assertIsNone(result.transfer_reversal_id)

        stored = self.reload(Order, order.id)
        self.assertEqual(stored.status, "refunded")
        self.assertEqual(stored.payment_status, "refunded")
        self.assertEqual(stored.escrow_status, "refunded")
        self.assertEqual(stored.refunded_amount, 412.0)
        self.assertEqual(stored.stripe_refund_id, result.refund_id)

        refund_call = self.provider.calls_for("refund")[0]
        self.assertEqual(refund_call["amount_cents"], 41200)
        self.assertEqual(refund_call["idempotency_key"], f"refund-{order.id}-41200")

    def test_refund_after_release_reverses_transfer(self):
        order = self.paid_order(self.buyer, self.listing)
        release_escrow_for_order(order.id)
        result = process_order_refund(order.id)

        self.assertTrue(self.provider.calls_for("refund")[0]["reverse_transfer"])
        self.assertIsNotNone(result.transfer_reversal_id)
        self.assertEqual(self.reload(Order, order.id).escrow_status, "refunded")

    def test_partial_refund_keeps_order_status(self):
        order = self.paid_order(self.buyer, self.listing)
        result = process_order_refund(order.id, amount_cents=10000)

        self.assertFalse(result.full)
        self.assertEqual(result.amount_refunded, 100.0)
        stored = self.reload(Order, order.id)
        self.assertEqual(stored.status, "confirmed")
        self.assertEqual(stored.payment_status, "partially_refunded")
        self.assertEqual(stored.escrow_status, "refunded")

    def test_refund_amount_bounds(self):
        order = self.paid_order(self.buyer, self.listing)
        for cents in (0, -100, 41201):
            with self.assertRaises(RefundError) as ctx:
                process_order_refund(order.id, amount_cents=cents)
            self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(self.provider.calls_for("refund"), [])

    def _assert_untouched(self, order_id: int, *, payment_status: str) -> None:
        stored = self.reload(Order, order_id)
        self.assertEqual(stored.status, "pending")
        self.assertEqual(stored.payment_status, payment_status)
        self.assertEqual(stored.escrow_status, "held")
        self.assertIsNone(stored.stripe_refund_id)
        self.assertEqual(EscrowTransition.query.filter_by(order_id=order_id).count(), 0)
        self.assertEqual(Notification.query.filter_by(title="Refund Processed").count(), 0)
        self.assertEqual(self.provider.calls_for("refund"), [])

    def test_refund_without_payment_intent(self):
        with UnitOfWork() as tx:
            order = create_order(
                buyer_id=self.buyer.id,
                listing_id=self.listing.id,
                quantity_sq_ft=10,
                uow=tx,
            ).order
        with self.assertRaises(RefundError) as ctx:
            process_order_refund(order.id)
        self.assertEqual(ctx.exception.error, "NO_PAYMENT_INTENT")
        self._assert_untouched(order.id, payment_status="pending")

    def test_refund_requires_succeeded_payment(self):
        order = self.place_order(self.buyer, self.listing)
        with self.assertRaises(RefundError) as ctx:
            process_order_refund(order.id)
        self.assertEqual(ctx.exception.error, "PAYMENT_NOT_SUCCEEDED")
        self.assertEqual(ctx.exception.status, 409)
        self._assert_untouched(order.id, payment_status="pending")

    def test_refund_twice_is_refused(self):
        order = self.paid_order(self.buyer, self.listing)
        process_order_refund(order.id)
        with self.assertRaises(RefundError):
            process_order_refund(order.id)
        self.assertEqual(len(self.provider.calls_for("refund")), 1)

    def test_processor_failure_changes_nothing(self):
        order = self.paid_order(self.buyer, self.listing)
        self.provider.fail("refund")
        with self.assertRaises(RefundError) as ctx:
            process_order_refund(order.id)
        self.assertEqual(ctx.exception.status, 502)

        stored = self.reload(Order, order.id)
        self.assertEqual(stored.status, "confirmed")
        self.assertEqual(stored.payment_status, "succeeded")
        self.assertEqual(stored.escrow_status, "held")
        self.assertIsNone(stored.stripe_refund_id)
        self.assertEqual(EscrowTransition.query.filter_by(order_id=order.id).count(), 0)

    def test_refund_after_delivery_via_status_move(self):
        from plankmarket.services.order_service import update_order_status

        order = self.paid_order(self.buyer, self.listing)
        update_order_status(order.id, "processing", actor_id=self.seller.id)
        update_order_status(order.id, "shipped", actor_id=self.seller.id, tracking_number="TRK9")
        update_order_status(order.id, "delivered", actor_id=self.seller.id)
        update_order_status(order.id, "refunded", actor_id=self.seller.id)

        stored = self.reload(Order, order.id)
        self.assertEqual(stored.status, "refunded")
        self.assertEqual(stored.escrow_status, "refunded")
        self.assertTrue(self.provider.calls_for("refund")[0]["reverse_transfer"])


class RefundEndpointTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        seller = self.make_seller()
        buyer = self.make_user()
        listing = self.make_listing(seller)
        self.order_id = int(self.paid_order(buyer, listing).id)
        self.buyer_id = int(buyer.id)
        self.admin_id = int(self.make_user("admin").id)

    def test_admin_refund(self):
        res = self.client.post(
            f"/api/orders/{self.order_id}/refund",
            json={"amount_cents": 5000, "reason": "Damaged pallet"},
            headers=self.auth(self.admin_id),
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["refund"]["amount_refunded"], 50.0)
        self.assertFalse(body["refund"]["full"])

    def test_buyer_cannot_refund(self):
        res = self.client.post(f"/api/orders/{self.order_id}/refund", headers=self.auth(self.buyer_id))
        self.assertEqual(res.status_code, 403)

    def test_bad_amount(self):
        res = self.client.post(
            f"/api/orders/{self.order_id}/refund",
            json={"amount_cents": "ten"},
            headers=self.auth(self.admin_id),
        )
        self.assertEqual(res.status_code, 400)

    def test_processor_failure_maps_to_502(self):
        self.provider.fail("refund")
        res = self.client.post(f"/api/orders/{self.order_id}/refund", headers=self.auth(self.admin_id))
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.get_json()["error"], "MOCK_REFUND_FAILED")

    def test_admin_confirms_pickup(self):
        res = self.client.post(f"/api/orders/{self.order_id}/pickup", headers=self.auth(self.admin_id))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["released"])


if __name__ == "__main__":
    unittest.main()
