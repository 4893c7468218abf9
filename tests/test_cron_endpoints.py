from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from plankmarket.models import Order
from tests.base import SettlementTestCase

CRON_SECRET = "cron-test-secret"


class CronEndpointsTestCase(SettlementTestCase):
    def test_missing_secret_is_a_server_misconfiguration(self):
        with patch.dict(os.environ, {"CRON_SECRET": ""}):
            res = self.client.post("/api/cron/expire-pending-orders")
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.get_json()["message"], "Cron endpoint misconfigured")

    def test_wrong_or_missing_bearer_is_unauthorized(self):
        with patch.dict(os.environ, {"CRON_SECRET": CRON_SECRET}):
            for headers in ({}, {"Authorization": "Bearer nope"}, {"Authorization": CRON_SECRET}):
                res = self.client.post("/api/cron/expire-offers", headers=headers)
                self.assertEqual(res.status_code, 401)

    def test_sweeps_run_with_the_secret(self):
        seller = self.make_seller()
        listing = self.make_listing(seller)
        order = self.place_order(self.make_user(), listing)
        self.update_row(order, created_at=datetime.utcnow() - timedelta(hours=30))
        order_id = int(order.id)

        headers = {"Authorization": f"Bearer {CRON_SECRET}"}
        with patch.dict(os.environ, {"CRON_SECRET": CRON_SECRET}):
            res = self.client.get("/api/cron/expire-pending-orders", headers=headers)
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.get_json()["expired"], 1)

            res = self.client.post("/api/cron/expire-promotions", headers=headers)
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.get_json(), {"expired": 0, "refunded": 0, "errors": 0})

            res = self.client.post("/api/cron/expire-offers", headers=headers)
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.get_json()["expired"], 0)

        self.assertEqual(self.reload(Order, order_id).status, "cancelled")


if __name__ == "__main__":
    unittest.main()
