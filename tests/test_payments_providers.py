from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import requests

from farmroute.errors import PaymentTransferFailed
from farmroute.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from farmroute.integrations.payments.factory import build_payments_provider, payment_health
from farmroute.integrations.payments.mock_provider import MockPaymentsProvider
from farmroute.integrations.payments.stripe_provider import StripePaymentsProvider


def _response(status: int, body: dict):
    r = MagicMock()
    r.status_code = status
    r.content = b"{}"
    r.json.return_value = body
    return r


class ProviderFactoryTestCase(unittest.TestCase):
    def test_mock_is_default(self):
        self.assertIsInstance(build_payments_provider({"PAYMENTS_PROVIDER": "mock"}), MockPaymentsProvider)

    def test_disabled(self):
        with self.assertRaises(IntegrationDisabledError):
            build_payments_provider({"PAYMENTS_PROVIDER": "disabled"})

    def test_stripe_needs_secret(self):
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider({"PAYMENTS_PROVIDER": "stripe", "STRIPE_SECRET_KEY": ""})
        provider = build_payments_provider({"PAYMENTS_PROVIDER": "stripe", "STRIPE_SECRET_KEY": "sk_test_x"})
        self.assertIsInstance(provider, StripePaymentsProvider)

    def test_unknown_provider(self):
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider({"PAYMENTS_PROVIDER": "barter"})

    def test_health(self):
        self.assertEqual(payment_health({"PAYMENTS_PROVIDER": "mock"})["status"], "configured")
        health = payment_health({"PAYMENTS_PROVIDER": "stripe", "STRIPE_SECRET_KEY": ""})
        self.assertEqual(health["status"], "misconfigured")
        self.assertEqual(health["missing"], ["STRIPE_SECRET_KEY"])


class StripeProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = StripePaymentsProvider("sk_test_x")

    def test_transfer_posts_with_idempotency_key(self):
        with patch("farmroute.integrations.payments.stripe_provider.requests.post", return_value=_response(200, {"id": "tr_123"})) as post:
            result = self.provider.transfer(amount_minor=8800, destination="acct_1", idempotency_key="payout-1-1", metadata={"payout_id": 1})
        self.assertEqual(result.reference, "tr_123")
        _, kwargs = post.call_args
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "payout-1-1")
        self.assertEqual(kwargs["data"]["amount"], 8800)
        self.assertEqual(kwargs["data"]["metadata[payout_id]"], "1")

    def test_error_response_raises_transfer_failed(self):
        body = {"error": {"message": "No such destination", "code": "resource_missing"}}
        with patch("farmroute.integrations.payments.stripe_provider.requests.post", return_value=_response(400, body)):
            with self.assertRaises(PaymentTransferFailed) as ctx:
                self.provider.transfer(amount_minor=100, destination="acct_x", idempotency_key="k")
        self.assertEqual(ctx.exception.details["stripe_code"], "resource_missing")

    def test_network_error_raises_transfer_failed(self):
        with patch(
            "farmroute.integrations.payments.stripe_provider.requests.post",
            side_effect=requests.ConnectionError("down"),
        ):
            with self.assertRaises(PaymentTransferFailed):
                self.provider.refund(payment_reference="pi_1", amount_minor=500, idempotency_key="refund-dispute-1")

    def test_refund_reports_status(self):
        with patch(
            "farmroute.integrations.payments.stripe_provider.requests.post",
            return_value=_response(200, {"id": "re_9", "status": "succeeded"}),
        ):
            result = self.provider.refund(payment_reference="pi_1", amount_minor=500, idempotency_key="refund-dispute-1")
        self.assertEqual((result.reference, result.status), ("re_9", "succeeded"))


if __name__ == "__main__":
    unittest.main()
