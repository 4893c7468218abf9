from __future__ import annotations

import unittest

from plankmarket.utils.fees import (
    cents_to_money,
    compute_order_fees,
    money_to_cents,
    offer_total_price,
    round2,
)


class FeeEngineTestCase(unittest.TestCase):
    def _charges(self, fees) -> tuple:
        return (
            fees.buyer_fee,
            fees.total_charge,
            fees.seller_fee,
            fees.seller_processor_fee,
            fees.total_processor_fee,
            fees.platform_processor_fee,
            fees.seller_payout,
        )

    def test_published_examples(self):
        self.assertEqual(self._charges(compute_order_fees(750, 250)), (30.0, 1030.0, 15.0, 22.05, 30.17, 8.12, 712.95))
        self.assertEqual(self._charges(compute_order_fees(0.5, 0.25)), (0.02, 0.77, 0.01, 0.31, 0.32, 0.01, 0.18))

    def test_empty_order_still_carries_fixed_processor_fee(self):
        fees = compute_order_fees(0, 0)
        self.assertEqual(fees.total_processor_fee, 0.3)
        self.assertEqual(fees.seller_processor_fee, 0.3)
        self.assertEqual(fees.platform_processor_fee, 0.0)
        self.assertEqual(fees.seller_payout, -0.3)

    def test_worked_example_without_shipping(self):
        fees = compute_order_fees(1000, 0)
        self.assertEqual(fees.buyer_fee, 30.0)
        self.assertEqual(fees.total_charge, 1030.0)
        self.assertEqual(fees.seller_fee, 20.0)
        self.assertEqual(fees.seller_processor_fee, 29.3)
        self.assertEqual(fees.total_processor_fee, 30.17)
        self.assertEqual(fees.platform_processor_fee, 0.87)
        self.assertEqual(fees.seller_payout, 950.7)

    def test_shipping_carries_buyer_fee_but_not_seller_fee(self):
        fees = compute_order_fees(1000, 100)
        self.assertEqual(fees.buyer_fee, 33.0)
        self.assertEqual(fees.total_charge, 1133.0)
        self.assertEqual(fees.seller_fee, 20.0)
        self.assertEqual(fees.total_processor_fee, 33.16)
        self.assertEqual(fees.platform_processor_fee, 3.86)
        self.assertEqual(fees.seller_payout, 950.7)

    def test_each_field_rounds_half_up_to_the_cent(self):
        fees = compute_order_fees("0.50")
        self.assertEqual(fees.buyer_fee, 0.02)
        self.assertEqual(fees.total_charge, 0.52)
        self.assertEqual(fees.seller_fee, 0.01)
        self.assertEqual(fees.seller_processor_fee, 0.31)
        self.assertEqual(fees.seller_payout, 0.18)

    def test_payout_can_go_negative_on_tiny_orders(self):
        fees = compute_order_fees(0.10)
        self.assertEqual(fees.seller_processor_fee, 0.30)
        self.assertEqual(fees.seller_payout, -0.2)

    def test_bad_inputs_count_as_zero(self):
        for bad in (-5, None, "abc", float("nan")):
            fees = compute_order_fees(bad, bad)
            self.assertEqual(fees.subtotal, 0.0)
            self.assertEqual(fees.shipping, 0.0)
            self.assertEqual(fees.buyer_fee, 0.0)
            self.assertEqual(fees.total_charge, 0.0)
            self.assertEqual(fees.platform_processor_fee, 0.0)

    def test_platform_processor_fee_is_never_negative(self):
        for subtotal in (0, 0.01, 1, 9.99, 250, 12345.67):
            fees = compute_order_fees(subtotal, 0)
            self.assertGreaterEqual(fees.platform_processor_fee, 0.0)
            self.assertGreaterEqual(fees.total_charge, fees.subtotal)

    def test_to_dict_carries_every_field(self):
        payload = compute_order_fees(200, 25).to_dict()
        self.assertEqual(
            set(payload),
            {
                "subtotal",
                "shipping",
                "buyer_fee",
                "total_charge",
                "seller_fee",
                "seller_processor_fee",
                "total_processor_fee",
                "platform_processor_fee",
                "seller_payout",
            },
        )

    def test_money_helpers(self):
        self.assertEqual(money_to_cents(10.005), 1001)
        self.assertEqual(money_to_cents("1030.00"), 103000)
        self.assertEqual(money_to_cents(-3), 0)
        self.assertEqual(cents_to_money(1001), 10.01)
        self.assertEqual(round2(2.675), 2.68)
        self.assertEqual(offer_total_price(3.333, 3), 10.0)
        self.assertEqual(offer_total_price(3.25, 1200), 3900.0)


if __name__ == "__main__":
    unittest.main()
