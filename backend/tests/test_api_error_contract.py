from __future__ import annotations

import unittest

from fulfillment_fixtures import FulfillmentAppMixin, fund


class ApiErrorContractTestCase(FulfillmentAppMixin, unittest.TestCase):
    def _assert_envelope(self, res, status: int, error: str | None = None) -> dict:
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        if error is not None:
            self.assertEqual(body.get("error"), error)
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self._assert_envelope(res, 404)

    def test_missing_actor_is_unauthorized(self):
        res = self.client.get("/api/wallet")
        self._assert_envelope(res, 403, "Unauthorized")

    def test_validation_error_envelope(self):
        res = self.client.post(
            "/api/orders",
            json={"product_id": "prod-1", "seller_id": "seller-1", "amount": -5},
            headers={"X-Actor-Id": "buyer-1"},
        )
        self._assert_envelope(res, 400, "ValidationError")

    def test_insufficient_funds_carries_details(self):
        fund("buyer-1", 100)
        res = self.client.post(
            "/api/orders",
            json={
                "product_id": "prod-1",
                "seller_id": "seller-1",
                "amount": 500,
                "pickup": {"address": "A", "latitude": 25.1, "longitude": 55.2},
                "dropoff": {"address": "B", "latitude": 25.2, "longitude": 55.3},
            },
            headers={"X-Actor-Id": "buyer-1"},
        )
        body = self._assert_envelope(res, 402, "InsufficientFunds")
        self.assertEqual(body["details"], {"user_id": "buyer-1", "required": 500, "available": 100})

    def test_not_found_order(self):
        res = self.client.get("/api/orders/nope", headers={"X-Actor-Id": "buyer-1"})
        self._assert_envelope(res, 404, "NotFound")

    def test_non_object_body_is_rejected(self):
        res = self.client.post("/api/wallet/deposit", json=[1, 2], headers={"X-Actor-Id": "buyer-1"})
        self._assert_envelope(res, 400, "ValidationError")


if __name__ == "__main__":
    unittest.main()
