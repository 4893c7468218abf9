from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
import unittest
from datetime import timedelta
from unittest.mock import patch

from plankmarket.integrations.payments.factory import set_payments_provider
from plankmarket.integrations.payments.mock_provider import MockPaymentsProvider
from plankmarket.jobs.expiry_sweeper import expire_pending_orders
from plankmarket.models import Order, User, WebhookEvent
from plankmarket.services.reconciliation_service import reconcile_escrow_ledger
from tests.base import SettlementTestCase

WEBHOOK_SECRET = "whsec_test"


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class StripeWebhookTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.provider = MockPaymentsProvider(webhook_secret=WEBHOOK_SECRET)
        set_payments_provider(self.app, self.provider)
        seller = self.make_seller()
        self.seller_id = int(seller.id)
        listing = self.make_listing(seller)
        order = self.place_order(self.make_user(), listing)
        self.order_id = int(order.id)
        self.intent_id = order.stripe_payment_intent_id

    def _post(self, event: dict, *, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
        body = json.dumps(event).encode("utf-8")
        ts = str(timestamp if timestamp is not None else int(time.time()))
        sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
        return self.client.post(
            "/api/webhooks/stripe",
            data=body,
            headers={"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"},
        )

    def _succeeded(self, event_id: str = "evt_paid_1") -> dict:
        return _event(
            event_id,
            "payment_intent.succeeded",
            {"id": self.intent_id, "metadata": {"order_id": str(self.order_id)}},
        )

    def test_payment_succeeded_confirms_order(self):
        res = self._post(self._succeeded())
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["result"]["applied"])

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.status, "confirmed")
        self.assertEqual(order.payment_status, "succeeded")
        row = WebhookEvent.query.filter_by(event_id="evt_paid_1").one()
        self.assertEqual(row.status, "processed")
        self.assertIsNotNone(row.processed_at)

    def test_redelivery_is_acknowledged_without_reprocessing(self):
        self._post(self._succeeded())
        res = self._post(self._succeeded())
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["replayed"])
        self.assertEqual(WebhookEvent.query.count(), 1)

    def test_bad_signature_is_rejected(self):
        res = self._post(self._succeeded(), secret="whsec_wrong")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_SIGNATURE")
        self.assertEqual(self.reload(Order, self.order_id).status, "pending")
        self.assertEqual(WebhookEvent.query.count(), 0)

    def test_missing_and_stale_signatures_are_rejected(self):
        res = self.client.post("/api/webhooks/stripe", data=json.dumps(self._succeeded()))
        self.assertEqual(res.status_code, 400)
        res = self._post(self._succeeded(), timestamp=int(time.time()) - 3600)
        self.assertEqual(res.status_code, 400)

    def test_unknown_event_type_is_recorded_as_ignored(self):
        res = self._post(_event("evt_misc_1", "charge.dispute.created", {"id": "dp_1"}))
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["result"]["applied"])
        self.assertEqual(WebhookEvent.query.filter_by(event_id="evt_misc_1").one().status, "ignored")

    def test_payment_failed_marks_payment(self):
        res = self._post(_event("evt_fail_1", "payment_intent.payment_failed", {"id": self.intent_id}))
        self.assertEqual(res.status_code, 200)
        order = self.reload(Order, self.order_id)
        self.assertEqual(order.payment_status, "failed")
        self.assertEqual(order.status, "pending")

    def test_account_updated_tracks_onboarding(self):
        account = {
            "id": "acct_fresh_1",
            "charges_enabled": True,
            "payouts_enabled": False,
            "metadata": {"user_id": str(self.seller_id)},
        }
        self._post(_event("evt_acct_1", "account.updated", account))
        self.assertFalse(self.reload(User, self.seller_id).stripe_onboarding_complete)

        account["payouts_enabled"] = True
        self._post(_event("evt_acct_2", "account.updated", account))
        self.assertTrue(self.reload(User, self.seller_id).stripe_onboarding_complete)

    def test_payment_after_cancellation_is_flagged_not_revived(self):
        order = self.reload(Order, self.order_id)
        self.update_row(order, created_at=order.created_at - timedelta(days=2))
        self.assertEqual(expire_pending_orders()["expired"], 1)

        res = self._post(self._succeeded())
        result = res.get_json()["result"]
        self.assertFalse(result["applied"])
        self.assertTrue(result["flagged"])

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.payment_status, "succeeded")
        self.assertIn("refund review required", order.notes)

        issues = {item["issue"] for item in reconcile_escrow_ledger()["drift_items"]}
        self.assertIn("paid_after_cancellation", issues)

    def test_failed_handler_allows_redelivery(self):
        with patch(
            "plankmarket.services.webhook_service.apply_payment_succeeded",
            side_effect=RuntimeError("db went away"),
        ):
            res = self._post(self._succeeded())
        self.assertEqual(res.status_code, 500)
        self.assertEqual(WebhookEvent.query.one().status, "failed")

        res = self._post(self._succeeded())
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["result"]["applied"])
        self.assertEqual(self.reload(WebhookEvent, WebhookEvent.query.one().id).status, "processed")

    def test_queue_mode_hands_event_to_worker(self):
        with patch.dict(os.environ, {"STRIPE_WEBHOOK_QUEUE": "1"}), patch(
            "plankmarket.tasks.settlement_tasks.process_stripe_webhook_task.delay"
        ) as delay:
            res = self._post(self._succeeded())
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["queued"])
        kwargs = delay.call_args.kwargs
        self.assertEqual(kwargs["event"]["id"], "evt_paid_1")
        self.assertEqual(self.reload(Order, self.order_id).status, "pending")


if __name__ == "__main__":
    unittest.main()
