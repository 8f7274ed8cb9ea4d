from __future__ import annotations

import os

from marketroute.integrations.common import IntegrationMisconfiguredError
from marketroute.integrations.dispatch.base import DispatchNotifier
from marketroute.integrations.dispatch.mock_provider import MockDispatchNotifier
from marketroute.integrations.dispatch.webhook_provider import WebhookDispatchNotifier
from marketroute.utils.settings import dispatch_provider


def build_dispatch_notifier(provider: str | None = None) -> DispatchNotifier:
    name = (provider or dispatch_provider() or "mock").strip().lower()
    if name == "mock":
        return MockDispatchNotifier()
    if name != "webhook":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:dispatch_provider={name}")
    url = (os.getenv("DISPATCH_WEBHOOK_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing DISPATCH_WEBHOOK_URL")
    return WebhookDispatchNotifier(url=url, secret=(os.getenv("DISPATCH_WEBHOOK_SECRET") or "").strip())


def dispatch_health() -> dict:
    name = dispatch_provider()
    missing = []
    if name == "webhook" and not (os.getenv("DISPATCH_WEBHOOK_URL") or "").strip():
        missing.append("DISPATCH_WEBHOOK_URL")
    return {
        "status": "misconfigured" if missing else "configured",
        "provider": name,
        "missing": missing,
    }
