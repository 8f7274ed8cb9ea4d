from __future__ import annotations

import requests

from marketroute.errors import PaymentDeclined
from marketroute.integrations.payments.base import PaymentReceipt, PaymentsProvider

PAYSTACK_BASE = "https://api.paystack.co"


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, authorization_lookup=None):
        self.secret_key = secret_key
        # Resolves a user id to a saved card authorization code.
        self.authorization_lookup = authorization_lookup

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict, *, failure: str) -> dict:
        r = requests.post(f"{PAYSTACK_BASE}{path}", headers=self._headers(), json=payload, timeout=25)
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            raise PaymentDeclined(f"{failure}:{msg}")
        return j

    def charge(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        authorization = self.authorization_lookup(user_id) if self.authorization_lookup else None
        if not authorization:
            raise PaymentDeclined("PAYSTACK_CHARGE_FAILED:no saved authorization", user_id=user_id)
        j = self._post(
            "/transaction/charge_authorization",
            {
                "authorization_code": authorization.get("authorization_code"),
                "email": authorization.get("email"),
                "amount": int(amount),
                "currency": currency,
                "reference": reference,
            },
            failure="PAYSTACK_CHARGE_FAILED",
        )
        data = j.get("data") or {}
        if (data.get("status") or "").strip().lower() != "success":
            raise PaymentDeclined(
                f"PAYSTACK_CHARGE_FAILED:{data.get('gateway_response') or 'declined'}",
                user_id=user_id,
            )
        return PaymentReceipt(
            receipt_id=(data.get("reference") or reference).strip(),
            amount=int(data.get("amount") or amount),
            currency=(data.get("currency") or currency).strip().upper(),
            provider=self.name,
            raw=j,
        )

    def refund(self, *, receipt_id: str, amount: int, currency: str) -> PaymentReceipt:
        j = self._post(
            "/refund",
            {"transaction": receipt_id, "amount": int(amount), "currency": currency},
            failure="PAYSTACK_REFUND_FAILED",
        )
        data = j.get("data") or {}
        return PaymentReceipt(
            receipt_id=str(data.get("id") or receipt_id),
            amount=int(amount),
            currency=currency,
            provider=self.name,
            raw=j,
        )

    def payout(self, *, user_id: str, amount: int, currency: str, reference: str) -> PaymentReceipt:
        authorization = self.authorization_lookup(user_id) if self.authorization_lookup else None
        recipient = (authorization or {}).get("recipient_code")
        if not recipient:
            raise PaymentDeclined("PAYSTACK_TRANSFER_FAILED:no transfer recipient", user_id=user_id)
        j = self._post(
            "/transfer",
            {
                "source": "balance",
                "amount": int(amount),
                "currency": currency,
                "recipient": recipient,
                "reference": reference,
                "reason": "Wallet withdrawal",
            },
            failure="PAYSTACK_TRANSFER_FAILED",
        )
        data = j.get("data") or {}
        return PaymentReceipt(
            receipt_id=(data.get("transfer_code") or reference).strip(),
            amount=int(amount),
            currency=currency,
            provider=self.name,
            raw=j,
        )
