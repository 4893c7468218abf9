from __future__ import annotations

import importlib
import importlib.util
import unittest
from pathlib import Path

from celery import Celery

from plankmarket.celery_app import beat_schedule
from plankmarket.models import Order
from plankmarket.services.errors import EscrowError
from plankmarket.tasks.settlement_tasks import (
    expire_offers_task,
    expire_pending_orders_task,
    expire_promotions_task,
    process_stripe_webhook_task,
    release_escrow_task,
)
from tests.base import SettlementTestCase


def _load_worker_check():
    path = Path(__file__).resolve().parents[1] / "ops" / "check_celery_import.py"
    spec = importlib.util.spec_from_file_location("check_celery_import", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class BeatScheduleTestCase(unittest.TestCase):
    def test_schedule_points_at_registered_tasks(self):
        names = {entry["task"] for entry in beat_schedule().values()}
        self.assertEqual(
            names,
            {expire_pending_orders_task.name, expire_promotions_task.name, expire_offers_task.name},
        )
        for entry in beat_schedule().values():
            self.assertGreaterEqual(entry["schedule"], 30.0)

    def test_worker_wiring_check_passes_for_worker_app(self):
        check = _load_worker_check()
        celery = importlib.import_module("celery_app").celery
        self.assertEqual(check.find_problems(celery), [])

    def test_worker_wiring_check_reports_broken_schedule(self):
        check = _load_worker_check()
        celery = Celery("wiring-check")
        celery.conf.beat_schedule = {"expire-offers": {"task": "plankmarket.tasks.missing", "schedule": 60.0}}
        self.assertEqual(
            check.find_problems(celery),
            [
                "beat entry missing: expire-pending-orders",
                "beat entry missing: expire-promotions",
                "beat entry expire-offers points at unknown task plankmarket.tasks.missing",
            ],
        )


class SettlementTasksTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        seller = self.make_seller()
        self.listing = self.make_listing(seller)
        self.buyer = self.make_user()

    def test_release_task_pays_seller(self):
        order = self.paid_order(self.buyer, self.listing)
        result = release_escrow_task.run(order_id=order.id, trace_id="trace_test")
        self.assertTrue(result["released"])
        self.assertEqual(self.reload(Order, order.id).escrow_status, "released")

    def test_release_task_surfaces_processor_failure(self):
        order = self.paid_order(self.buyer, self.listing)
        self.provider.fail("transfer")
        with self.assertRaises(EscrowError):
            release_escrow_task.run(order_id=order.id)
        self.assertEqual(self.reload(Order, order.id).escrow_status, "held")

    def test_sweep_task_returns_summary(self):
        result = expire_pending_orders_task.run()
        self.assertEqual(result["expired"], 0)
        self.assertEqual(result["errors"], 0)

    def test_webhook_task_applies_event(self):
        order = self.place_order(self.buyer, self.listing)
        event = {
            "id": "evt_task_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": order.stripe_payment_intent_id}},
        }
        result = process_stripe_webhook_task.run(event=event, digest="abc")
        self.assertTrue(result["ok"])
        self.assertEqual(self.reload(Order, order.id).status, "confirmed")


if __name__ == "__main__":
    unittest.main()
