from __future__ import annotations

from dataclasses import dataclass


@dataclass
class DispatchResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class DispatchNotifier:
    """Outbound buyer/seller/driver notifications (push, SMS, webhook)."""

    name = "unknown"

    def notify(self, *, recipient_id: str, event: str, payload: dict, reference: str = "") -> DispatchResult:
        raise NotImplementedError
