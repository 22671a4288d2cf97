from __future__ import annotations

import requests

from farmroute.errors import PaymentTransferFailed
from farmroute.integrations.payments.base import PaymentsProvider, RefundResult, TransferResult

STRIPE_API_BASE = "https://api.stripe.com/v1"


def _flatten_metadata(metadata: dict | None) -> dict:
    return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items()}


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, *, timeout: int = 25, api_base: str = STRIPE_API_BASE):
        self.secret_key = secret_key
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")

    def _post(self, path: str, data: dict, idempotency_key: str) -> dict:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Idempotency-Key": idempotency_key,
        }
        try:
            r = requests.post(f"{self.api_base}{path}", headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise PaymentTransferFailed(f"stripe unreachable: {e}") from e
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300:
            err = (j.get("error") or {}) if isinstance(j, dict) else {}
            msg = (err.get("message") or f"HTTP {r.status_code}").strip()
            raise PaymentTransferFailed(
                f"stripe {path} failed: {msg}",
                {"status": r.status_code, "stripe_code": err.get("code") or ""},
            )
        return j if isinstance(j, dict) else {"payload": j}

    def transfer(self, *, amount_minor, destination, idempotency_key, currency="usd", metadata=None) -> TransferResult:
        data = {
            "amount": int(amount_minor),
            "currency": (currency or "usd").lower(),
            "destination": destination,
        }
        data.update(_flatten_metadata(metadata))
        j = self._post("/transfers", data, idempotency_key)
        return TransferResult(
            reference=str(j.get("id") or ""),
            status="paid",
            provider=self.name,
            raw=j,
        )

    def refund(self, *, payment_reference, amount_minor, idempotency_key, metadata=None) -> RefundResult:
        data = {
            "payment_intent": payment_reference,
            "amount": int(amount_minor),
        }
        data.update(_flatten_metadata(metadata))
        j = self._post("/refunds", data, idempotency_key)
        return RefundResult(
            reference=str(j.get("id") or ""),
            status=str(j.get("status") or "pending"),
            provider=self.name,
            raw=j,
        )
