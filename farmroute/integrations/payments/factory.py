from __future__ import annotations

import os

from flask import current_app, has_app_context

from farmroute.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from farmroute.integrations.payments.base import PaymentsProvider
from farmroute.integrations.payments.mock_provider import MockPaymentsProvider
from farmroute.integrations.payments.stripe_provider import StripePaymentsProvider


def _config_value(config, key: str, default=None):
    if config is None and has_app_context():
        config = current_app.config
    if config is not None and key in config:
        return config.get(key)
    return os.getenv(key, default)


def build_payments_provider(config=None) -> PaymentsProvider:
    provider = (_config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (_config_value(config, "STRIPE_SECRET_KEY", "") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    return StripePaymentsProvider(secret_key=secret_key)


def payment_health(config=None) -> dict:
    provider = (_config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()
    missing = []
    if provider == "stripe" and not (_config_value(config, "STRIPE_SECRET_KEY", "") or "").strip():
        missing.append("STRIPE_SECRET_KEY")
    if provider == "disabled":
        status = "disabled"
    elif provider not in ("mock", "stripe"):
        status = "misconfigured"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
