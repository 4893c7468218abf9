from __future__ import annotations

import os

from flask import current_app

from plankmarket.integrations.common import IntegrationMisconfiguredError
from plankmarket.integrations.payments.base import PaymentsProvider
from plankmarket.integrations.payments.mock_provider import MockPaymentsProvider
from plankmarket.integrations.payments.stripe_provider import StripePaymentsProvider

_EXTENSION_KEY = "plankmarket.payments_provider"


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name) or "").strip() or default)
    except ValueError:
        return int(default)


def build_payments_provider() -> PaymentsProvider:
    provider = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    webhook_secret = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()

    if provider == "mock":
        return MockPaymentsProvider(webhook_secret=webhook_secret)

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")
    if not webhook_secret:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_WEBHOOK_SECRET")

    return StripePaymentsProvider(
        secret_key=secret_key,
        webhook_secret=webhook_secret,
        webhook_tolerance=_env_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300),
    )


def get_payments_provider() -> PaymentsProvider:
    """Provider bound to the current Flask app, built on first use."""
    provider = current_app.extensions.get(_EXTENSION_KEY)
    if provider is None:
        provider = build_payments_provider()
        current_app.extensions[_EXTENSION_KEY] = provider
    return provider


def set_payments_provider(app, provider: PaymentsProvider) -> None:
    app.extensions[_EXTENSION_KEY] = provider


def payment_health() -> dict:
    provider = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "stripe":
        for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"):
            if not (os.getenv(key) or "").strip():
                missing.append(key)
    return {
        "provider": provider,
        "status": "misconfigured" if missing else "configured",
        "missing": missing,
    }
