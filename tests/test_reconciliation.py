from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from plankmarket.models import ReconciliationReport
from plankmarket.services.escrow_service import process_order_refund, release_escrow_for_order
from plankmarket.services.reconciliation_service import latest_report, persist_report, reconcile_escrow_ledger
from tests.base import SettlementTestCase


class LedgerReconciliationTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_seller()
        self.buyer = self.make_user()
        self.listing = self.make_listing(self.seller, total_sq_ft=5000.0)

    def _issues(self, **kw) -> dict:
        summary = reconcile_escrow_ledger(**kw)
        return {item["order_id"]: item["issue"] for item in summary["drift_items"]}

    def test_consistent_ledger_has_no_drift(self):
        self.place_order(self.buyer, self.listing)
        released = self.paid_order(self.buyer, self.listing)
        release_escrow_for_order(released.id)
        refunded = self.paid_order(self.buyer, self.listing)
        process_order_refund(refunded.id)

        summary = reconcile_escrow_ledger()
        self.assertTrue(summary["ok"])
        self.assertEqual(summary["checked_count"], 3)
        self.assertEqual(summary["drift_count"], 0)
        self.assertEqual(summary["drift_items"], [])

    def test_release_without_transfer_is_drift(self):
        order = self.paid_order(self.buyer, self.listing)
        self.update_row(order, escrow_status="released")
        self.assertEqual(self._issues(), {order.id: "released_without_transfer"})

    def test_delivered_order_with_held_escrow_is_drift_after_grace(self):
        order = self.paid_order(self.buyer, self.listing)
        self.update_row(order, status="delivered", delivered_at=datetime.utcnow() - timedelta(days=10))
        self.assertEqual(self._issues(), {order.id: "held_after_delivery"})
        self.assertEqual(self._issues(held_after_delivery_days=14), {})

    def test_cancelled_order_must_release_inventory(self):
        order = self.place_order(self.buyer, self.listing)
        self.update_row(order, status="cancelled")
        self.assertEqual(self._issues(), {order.id: "cancelled_inventory_not_released"})

    def test_fulfilment_without_payment_is_drift(self):
        order = self.place_order(self.buyer, self.listing)
        self.update_row(order, status="processing")
        self.assertEqual(self._issues(), {order.id: "fulfilment_without_payment"})

    def test_reports_persist(self):
        order = self.paid_order(self.buyer, self.listing)
        self.update_row(order, escrow_status="released")
        report = persist_report(reconcile_escrow_ledger(), created_by=self.make_user("admin").id)
        self.assertEqual(report.drift_count, 1)
        self.assertEqual(latest_report().id, report.id)
        self.assertEqual(report.to_dict()["summary"]["drift_items"][0]["issue"], "released_without_transfer")


class ReconciliationEndpointTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.admin_id = int(self.make_user("admin").id)
        self.buyer_id = int(self.make_user().id)

    def test_admin_runs_and_reads_reports(self):
        res = self.client.get("/api/admin/reconcile/latest", headers=self.auth(self.admin_id))
        self.assertEqual(res.get_json(), {"ok": True, "report": None})

        res = self.client.post("/api/admin/reconcile", json={}, headers=self.auth(self.admin_id))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertIsNotNone(body["report_id"])
        self.assertEqual(body["summary"]["drift_count"], 0)

        res = self.client.post("/api/admin/reconcile", json={"persist": False}, headers=self.auth(self.admin_id))
        self.assertIsNone(res.get_json()["report_id"])
        self.assertEqual(ReconciliationReport.query.count(), 1)

        res = self.client.get("/api/admin/reconcile/latest", headers=self.auth(self.admin_id))
        self.assertEqual(res.get_json()["report"]["created_by"], self.admin_id)

    def test_non_admin_is_forbidden(self):
        res = self.client.post("/api/admin/reconcile", json={}, headers=self.auth(self.buyer_id))
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
