from __future__ import annotations

import os

from marketroute.errors import PaymentDeclined
from marketroute.integrations.payments.base import PaymentReceipt, PaymentsProvider


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def __init__(self):
        self.calls: list[dict] = []

    def _decline_limit(self) -> int | None:
        raw = (os.getenv("MOCK_PAYMENT_DECLINE_ABOVE") or "").strip()
        if not raw.isdigit():
            return None
        return int(raw)

    def _receipt(self, kind: str, reference: str, amount: int, currency: str) -> PaymentReceipt:
        self.calls.append({"kind": kind, "reference": reference, "amount": int(amount)})
        return PaymentReceipt(
            receipt_id=f"mock_{kind}_{reference}",
            amount=int(amount),
            currency=currency,
            provider=self.name,
            raw={"reference": reference, "provider": self.name},
        )

    def charge(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        limit = self._decline_limit()
        if "[decline]" in (reference or "").lower() or (limit is not None and int(amount) > limit):
            raise PaymentDeclined(f"mock provider declined charge {reference}", user_id=user_id)
        return self._receipt("charge", reference, amount, currency)

    def refund(self, *, receipt_id: str, amount: int, currency: str) -> PaymentReceipt:
        return self._receipt("refund", receipt_id, amount, currency)

    def payout(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        return self._receipt("payout", reference, amount, currency)
