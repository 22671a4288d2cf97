from __future__ import annotations

import hashlib

from farmroute.errors import PaymentTransferFailed
from farmroute.integrations.payments.base import PaymentsProvider, RefundResult, TransferResult


def _mock_reference(prefix: str, key: str) -> str:
    return f"{prefix}_mock_{hashlib.sha1(key.encode('utf-8')).hexdigest()[:16]}"


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def __init__(self, *, failing_destinations=None, fail_refunds: bool = False):
        self.failing_destinations = set(failing_destinations or ())
        self.fail_refunds = bool(fail_refunds)
        self.transfers: list[dict] = []
        self.refunds: list[dict] = []

    def transfer(self, *, amount_minor, destination, idempotency_key, currency="usd", metadata=None) -> TransferResult:
        if destination in self.failing_destinations:
            raise PaymentTransferFailed("destination rejected by mock provider", {"destination": destination})
        self.transfers.append(
            {
                "amount_minor": int(amount_minor),
                "destination": destination,
                "idempotency_key": idempotency_key,
                "currency": currency,
                "metadata": metadata or {},
            }
        )
        return TransferResult(
            reference=_mock_reference("tr", idempotency_key),
            status="paid",
            provider=self.name,
            raw={"destination": destination, "amount": int(amount_minor)},
        )

    def refund(self, *, payment_reference, amount_minor, idempotency_key, metadata=None) -> RefundResult:
        if self.fail_refunds:
            raise PaymentTransferFailed("refund rejected by mock provider", {"payment_reference": payment_reference})
        self.refunds.append(
            {
                "payment_reference": payment_reference,
                "amount_minor": int(amount_minor),
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        return RefundResult(
            reference=_mock_reference("re", idempotency_key),
            status="succeeded",
            provider=self.name,
            raw={"payment_reference": payment_reference, "amount": int(amount_minor)},
        )
