from __future__ import annotations

import unittest

from plankmarket.models import IdempotencyKey, Listing, Order
from plankmarket.services.order_service import apply_payment_succeeded
from tests.base import SettlementTestCase


class OrdersApiTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        seller = self.make_seller()
        self.seller_id = int(seller.id)
        self.listing_id = int(self.make_listing(seller, total_sq_ft=1000.0, ask=4.0).id)
        self.buyer_id = int(self.make_user().id)

    def _create(self, payload: dict, key: str | None = None):
        headers = self.auth(self.buyer_id)
        if key:
            headers["Idempotency-Key"] = key
        return self.client.post("/api/orders", json=payload, headers=headers)

    def test_checkout_returns_order_and_client_secret(self):
        res = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 100, "shipping_price": 50})
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertEqual(body["order"]["total_price"], 463.5)
        self.assertEqual(body["order"]["status"], "pending")
        self.assertTrue(body["client_secret"])

    def test_idempotency_key_replays_first_response(self):
        payload = {"listing_id": self.listing_id, "quantity_sq_ft": 100}
        first = self._create(payload, key="checkout-1")
        second = self._create(payload, key="checkout-1")
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)
        self.assertEqual(first.get_json()["order"]["id"], second.get_json()["order"]["id"])
        self.assertEqual(Order.query.count(), 1)
        self.assertEqual(self.reload(Listing, self.listing_id).total_sq_ft, 900.0)

    def test_idempotency_key_reuse_with_new_payload_conflicts(self):
        self._create({"listing_id": self.listing_id, "quantity_sq_ft": 100}, key="checkout-2")
        res = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 200}, key="checkout-2")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "IDEMPOTENCY_KEY_REUSED")

    def test_failed_request_frees_its_key(self):
        res = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 5000}, key="checkout-3")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INSUFFICIENT_INVENTORY")
        self.assertEqual(IdempotencyKey.query.count(), 0)

        res = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 5000}, key="checkout-3")
        self.assertEqual(res.get_json()["error"], "INSUFFICIENT_INVENTORY")

    def test_listing_id_required(self):
        res = self._create({"quantity_sq_ft": 10})
        self.assertEqual(res.status_code, 400)

    def test_seller_moves_order_through_fulfilment(self):
        order_id = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 100}).get_json()["order"]["id"]
        order = self.reload(Order, order_id)
        apply_payment_succeeded(order.stripe_payment_intent_id)

        seller = self.auth(self.seller_id)
        res = self.client.post(f"/api/orders/{order_id}/status", json={"status": "processing"}, headers=seller)
        self.assertEqual(res.status_code, 200)
        res = self.client.post(f"/api/orders/{order_id}/status", json={"status": "shipped"}, headers=seller)
        self.assertEqual(res.status_code, 400)
        res = self.client.post(
            f"/api/orders/{order_id}/status",
            json={"status": "shipped", "tracking_number": "PRO-778812", "carrier": "Estes"},
            headers=seller,
        )
        self.assertEqual(res.status_code, 200)

        res = self.client.get(f"/api/orders/{order_id}", headers=self.auth(self.buyer_id))
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "shipped")
        self.assertEqual(order["escrow_status"], "released")

    def test_buyer_cannot_set_status(self):
        order_id = self._create({"listing_id": self.listing_id, "quantity_sq_ft": 10}).get_json()["order"]["id"]
        res = self.client.post(
            f"/api/orders/{order_id}/status",
            json={"status": "cancelled"},
            headers=self.auth(self.buyer_id),
        )
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
