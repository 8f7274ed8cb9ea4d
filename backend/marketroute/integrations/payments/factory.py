from __future__ import annotations

import os

from marketroute.integrations.common import IntegrationMisconfiguredError
from marketroute.integrations.payments.base import PaymentsProvider
from marketroute.integrations.payments.mock_provider import MockPaymentsProvider
from marketroute.integrations.payments.paystack_provider import PaystackPaymentsProvider
from marketroute.utils.settings import payments_provider


def build_payments_provider(provider: str | None = None) -> PaymentsProvider:
    name = (provider or payments_provider() or "mock").strip().lower()
    if name == "mock":
        return MockPaymentsProvider()
    if name != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={name}")
    secret_key = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")
    return PaystackPaymentsProvider(secret_key=secret_key)


def payment_health() -> dict:
    name = payments_provider()
    missing = []
    if name == "paystack" and not (os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        missing.append("PAYSTACK_SECRET_KEY")
    return {
        "status": "misconfigured" if missing else "configured",
        "provider": name,
        "missing": missing,
    }
