from __future__ import annotations

import hashlib
import hmac
import json

import requests

from marketroute.integrations.dispatch.base import DispatchNotifier, DispatchResult


def _map_webhook_error(status: int) -> str:
    if status in (401, 403):
        return "DISPATCH_AUTH_FAILED"
    if status == 429:
        return "DISPATCH_RATE_LIMITED"
    if status in (400, 404, 422):
        return "DISPATCH_REJECTED"
    return "DISPATCH_PROVIDER_DOWN"


class WebhookDispatchNotifier(DispatchNotifier):
    name = "webhook"

    def __init__(self, *, url: str, secret: str = "", timeout: int = 8):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def _signature(self, body: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def notify(self, *, recipient_id: str, event: str, payload: dict, reference: str = "") -> DispatchResult:
        body = json.dumps(
            {
                "recipient_id": recipient_id,
                "event": event,
                "payload": payload or {},
                "reference": reference,
            },
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Marketroute-Signature"] = self._signature(body)
        try:
            r = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.Timeout:
            return DispatchResult(ok=False, code="DISPATCH_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return DispatchResult(ok=False, code="DISPATCH_PROVIDER_DOWN", message=str(e)[:200])
        if 200 <= r.status_code < 300:
            return DispatchResult(ok=True, code="OK", message="sent")
        return DispatchResult(
            ok=False,
            code=_map_webhook_error(r.status_code),
            message=(r.text or f"http_{r.status_code}")[:200],
        )
