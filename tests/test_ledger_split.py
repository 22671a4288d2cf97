from __future__ import annotations

import unittest
from decimal import Decimal

from farmroute.errors import ValidationError
from farmroute.utils.ledger import (
    driver_payout,
    driver_payout_minor,
    money_major_to_minor,
    money_minor_to_major,
    split_revenue,
    split_revenue_minor,
)


class RevenueSplitTestCase(unittest.TestCase):
    def test_hundred_dollar_order(self):
        shares = split_revenue("100.00")
        self.assertEqual(shares["farmer_share"], Decimal("88.00"))
        self.assertEqual(shares["lead_farmer_share"], Decimal("2.00"))
        self.assertEqual(shares["platform_fee"], Decimal("10.00"))

    def test_shares_always_sum_to_subtotal(self):
        for subtotal in (0, 1, 3, 7, 99, 101, 1999, 12345, 33333, 1000001):
            parts = split_revenue_minor(subtotal)
            self.assertEqual(sum(parts.values()), subtotal, subtotal)
            self.assertTrue(all(v >= 0 for v in parts.values()), parts)

    def test_rounding_remainder_goes_to_platform(self):
        # 88% of 33 cents is 29.04, 2% is 0.66
        parts = split_revenue_minor(33)
        self.assertEqual(parts, {"farmer_share": 29, "lead_farmer_share": 1, "platform_fee": 3})

    def test_rates_can_be_overridden(self):
        parts = split_revenue_minor(10000, farmer_bps=9000, lead_farmer_bps=0)
        self.assertEqual(parts, {"farmer_share": 9000, "lead_farmer_share": 0, "platform_fee": 1000})

    def test_negative_subtotal_is_rejected(self):
        with self.assertRaises(ValidationError):
            split_revenue_minor(-1)

    def test_rates_above_whole_are_rejected(self):
        with self.assertRaises(ValidationError):
            split_revenue_minor(100, farmer_bps=9900, lead_farmer_bps=200)


class DriverPayoutTestCase(unittest.TestCase):
    def test_zero_deliveries_pay_nothing(self):
        self.assertEqual(driver_payout(0), Decimal("0.00"))

    def test_flat_fee_per_delivery(self):
        self.assertEqual(driver_payout(3), Decimal("22.50"))
        self.assertEqual(driver_payout_minor(3), 2250)

    def test_negative_count_is_rejected(self):
        with self.assertRaises(ValidationError):
            driver_payout_minor(-2)


class MoneyConversionTestCase(unittest.TestCase):
    def test_major_to_minor_rounds_half_up(self):
        self.assertEqual(money_major_to_minor("7.505"), 751)
        self.assertEqual(money_major_to_minor(19.99), 1999)

    def test_minor_to_major(self):
        self.assertEqual(money_minor_to_major(750), 7.5)

    def test_non_numeric_amount_is_rejected(self):
        with self.assertRaises(ValidationError):
            money_major_to_minor("ten dollars")


if __name__ == "__main__":
    unittest.main()
