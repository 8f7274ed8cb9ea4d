from __future__ import annotations

import os

from marketroute.integrations.dispatch.base import DispatchNotifier, DispatchResult

# Process-wide outbox so tests can assert on what was sent.
SENT: list[dict] = []


class MockDispatchNotifier(DispatchNotifier):
    name = "mock"

    def _force_failure(self, event: str) -> bool:
        return "[fail]" in (event or "").lower() or (os.getenv("MOCK_DISPATCH_FORCE_FAIL") or "").strip() == "1"

    def notify(self, *, recipient_id: str, event: str, payload: dict, reference: str = "") -> DispatchResult:
        if self._force_failure(event):
            return DispatchResult(ok=False, code="DISPATCH_PROVIDER_DOWN", message="mock forced failure")
        SENT.append(
            {
                "recipient_id": recipient_id,
                "event": event,
                "payload": dict(payload or {}),
                "reference": reference,
            }
        )
        return DispatchResult(ok=True, code="OK", message="mock_sent", raw={"reference": reference})
