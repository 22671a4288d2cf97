from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TransferResult:
    reference: str
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class RefundResult:
    reference: str
    status: str
    provider: str
    raw: dict | None = None


class PaymentsProvider:
    """Moves money out of the platform account.

    Implementations raise ``PaymentTransferFailed`` for any failure the
    caller should record against the payout or refund row.
    """

    name = "unknown"

    def transfer(
        self,
        *,
        amount_minor: int,
        destination: str,
        idempotency_key: str,
        currency: str = "usd",
        metadata: dict | None = None,
    ) -> TransferResult:
        raise NotImplementedError

    def refund(
        self,
        *,
        payment_reference: str,
        amount_minor: int,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> RefundResult:
        raise NotImplementedError
