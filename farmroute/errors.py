from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class EngineError(Exception):
    """Base class for recoverable engine failures surfaced to the caller."""

    message: str
    details: dict = field(default_factory=dict)

    code = "ENGINE_ERROR"
    http_status = 400

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class InvalidTransition(EngineError):
    code = "INVALID_TRANSITION"
    http_status = 409


class OutOfOrderScan(EngineError):
    code = "OUT_OF_ORDER_SCAN"
    http_status = 409


class NotFound(EngineError):
    code = "NOT_FOUND"
    http_status = 404


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    http_status = 400


class ConcurrencyConflict(EngineError):
    code = "CONCURRENCY_CONFLICT"
    http_status = 409


class PaymentTransferFailed(EngineError):
    code = "PAYMENT_TRANSFER_FAILED"
    http_status = 502


class Forbidden(EngineError):
    code = "FORBIDDEN"
    http_status = 403
