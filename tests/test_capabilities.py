from __future__ import annotations

import unittest
from types import SimpleNamespace

from plankmarket.utils.capabilities import (
    BUY,
    CONFIRM_PICKUP,
    FULFIL_ORDER,
    MAKE_OFFER,
    NEGOTIATE,
    OPEN_DISPUTE,
    REFUND_ORDER,
    RESOLVE_DISPUTE,
    REVIEW_VIOLATIONS,
    RUN_RECONCILIATION,
    can,
    capabilities_for,
)


class CapabilitiesTestCase(unittest.TestCase):
    def test_buyer(self):
        self.assertEqual(capabilities_for("buyer"), frozenset({MAKE_OFFER, NEGOTIATE, BUY, OPEN_DISPUTE}))

    def test_seller_also_buys(self):
        caps = capabilities_for("seller")
        for cap in (MAKE_OFFER, NEGOTIATE, BUY, FULFIL_ORDER, OPEN_DISPUTE):
            self.assertIn(cap, caps)
        self.assertNotIn(REFUND_ORDER, caps)

    def test_admin_operates_but_does_not_trade(self):
        caps = capabilities_for("admin")
        for cap in (FULFIL_ORDER, CONFIRM_PICKUP, REFUND_ORDER, RESOLVE_DISPUTE, REVIEW_VIOLATIONS, RUN_RECONCILIATION):
            self.assertIn(cap, caps)
        self.assertNotIn(BUY, caps)
        self.assertNotIn(MAKE_OFFER, caps)

    def test_unknown_roles_and_missing_users(self):
        self.assertEqual(capabilities_for("driver"), frozenset())
        self.assertEqual(capabilities_for(None), frozenset())
        self.assertFalse(can(None, BUY))
        self.assertTrue(can(SimpleNamespace(role=" Seller "), FULFIL_ORDER))


if __name__ == "__main__":
    unittest.main()
