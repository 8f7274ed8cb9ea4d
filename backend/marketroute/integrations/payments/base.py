from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentReceipt:
    receipt_id: str
    amount: int
    currency: str
    provider: str
    raw: dict | None = None


class PaymentsProvider:
    """External money movement. Amounts are integer minor units."""

    name = "unknown"

    def charge(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        raise NotImplementedError

    def refund(self, *, receipt_id: str, amount: int, currency: str) -> PaymentReceipt:
        raise NotImplementedError

    def payout(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        raise NotImplementedError
