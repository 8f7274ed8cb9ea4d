from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from fulfillment_fixtures import BUYER_DROPOFF, SELLER_PICKUP, FulfillmentAppMixin

from marketroute.extensions import db
from marketroute.integrations.dispatch.mock_provider import SENT
from marketroute.models import Order
from marketroute.services import scheduler_service

BUYER = {"X-Actor-Id": "buyer-1", "X-Actor-Role": "buyer"}
SELLER = {"X-Actor-Id": "seller-1", "X-Actor-Role": "seller"}
DRIVER = {"X-Actor-Id": "driver-1", "X-Actor-Role": "driver"}
OPERATOR = {"X-Actor-Id": "op-1", "X-Actor-Role": "operator"}


class FulfillmentApiTestCase(FulfillmentAppMixin, unittest.TestCase):
    def _deposit(self, headers: dict, amount: int, key: str):
        return self.client.post(
            "/api/wallet/deposit",
            json={"amount": amount},
            headers={**headers, "Idempotency-Key": key},
        )

    def _create_order(self, product_id: str = "prod-1", amount: int = 500, **extra):
        body = {
            "product_id": product_id,
            "seller_id": "seller-1",
            "amount": amount,
            "pickup": SELLER_PICKUP,
            "dropoff": BUYER_DROPOFF,
        }
        body.update(extra)
        return self.client.post("/api/orders", json=body, headers=BUYER)

    def _batch_latest(self, *order_ids: str) -> dict:
        # Confirmed just before the checkpoint that most recently fired.
        _, _, fired_at = scheduler_service.latest_checkpoint()
        Order.query.filter(Order.id.in_(order_ids)).update(
            {"confirmed_at": fired_at - timedelta(minutes=1)}, synchronize_session=False
        )
        db.session.commit()
        res = self.client.post("/api/routes/checkpoints", json={}, headers=OPERATOR)
        self.assertEqual(res.status_code, 200)
        return res.get_json()["batch"]

    def test_wallet_deposit_is_idempotent_per_key(self):
        first = self._deposit(BUYER, 800, "topup-1")
        replay = self._deposit(BUYER, 800, "topup-1")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(replay.status_code, 201)
        self.assertEqual(first.get_json()["entry"]["id"], replay.get_json()["entry"]["id"])
        wallet = self.client.get("/api/wallet", headers=BUYER).get_json()["wallet"]
        self.assertEqual((wallet["balance"], wallet["held"], wallet["available"]), (800, 0, 800))

        res = self.client.post("/api/wallet/withdraw", json={"amount": 300, "reference": "wd-1"}, headers=BUYER)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["wallet"]["balance"], 500)
        entries = self.client.get("/api/wallet/entries", headers=BUYER).get_json()
        self.assertEqual(entries["count"], 2)

        missing_ref = self.client.post("/api/wallet/deposit", json={"amount": 10}, headers=BUYER)
        self.assertEqual(missing_ref.status_code, 400)

    def test_full_order_lifecycle_through_api(self):
        self._deposit(BUYER, 500, "topup-1")

        created = self._create_order()
        self.assertEqual(created.status_code, 201)
        order = created.get_json()["order"]
        order_id = order["id"]
        self.assertEqual(order["status"], "pending")
        self.assertEqual(self.client.get("/api/wallet", headers=BUYER).get_json()["wallet"]["held"], 500)

        # Only the parties and operators may read an order.
        stranger = self.client.get(f"/api/orders/{order_id}", headers={"X-Actor-Id": "someone"})
        self.assertEqual(stranger.status_code, 403)

        res = self.client.post(f"/api/orders/{order_id}/confirm", headers=SELLER)
        self.assertEqual(res.get_json()["order"]["status"], "confirmed")

        batch = self._batch_latest(order_id)
        self.assertEqual(batch["status"], "ready")
        self.assertEqual(batch["order_count"], 1)
        route = batch["routes"][0]
        self.assertEqual([s["kind"] for s in route["stops"]], ["pickup", "delivery"])

        res = self.client.post(
            f"/api/routes/batches/{batch['id']}/dispatch",
            json={"driver_ids": ["driver-1"]},
            headers=OPERATOR,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["batch"]["status"], "dispatched")

        res = self.client.get(f"/api/routes/{route['id']}", headers=DRIVER)
        self.assertEqual(res.status_code, 200)
        pickup_id = res.get_json()["route"]["stops"][0]["id"]
        res = self.client.post(f"/api/routes/{route['id']}/stops/{pickup_id}/complete", headers=DRIVER)
        self.assertEqual(res.get_json()["stop"]["status"], "completed")

        # The assigned driver can now see the order.
        res = self.client.get(f"/api/orders/{order_id}", headers=DRIVER)
        self.assertEqual(res.get_json()["order"]["status"], "out_for_delivery")

        res = self.client.post(f"/api/orders/{order_id}/confirm-delivery", headers=BUYER)
        delivered = res.get_json()["order"]
        self.assertEqual(delivered["status"], "delivered")
        self.assertIsNotNone(delivered["dispute_deadline"])

        res = self.client.post(f"/api/orders/{order_id}/dispute", json={"reason": "box was empty"}, headers=BUYER)
        self.assertEqual(res.get_json()["order"]["status"], "disputed")

        queue = self.client.get("/api/admin/disputes", headers=OPERATOR).get_json()
        self.assertEqual([o["id"] for o in queue["items"]], [order_id])
        self.assertEqual(self.client.get("/api/admin/disputes", headers=BUYER).status_code, 403)

        res = self.client.post(
            f"/api/admin/disputes/{order_id}/resolve",
            json={"outcome": "refund", "note": "driver photo shows empty box"},
            headers=OPERATOR,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "refunded")
        again = self.client.post(
            f"/api/admin/disputes/{order_id}/resolve",
            json={"outcome": "release"},
            headers=OPERATOR,
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "AlreadyResolved")

        wallet = self.client.get("/api/wallet", headers=BUYER).get_json()["wallet"]
        self.assertEqual((wallet["balance"], wallet["held"]), (500, 0))

        res = self.client.get(f"/api/orders/{order_id}?history=1", headers=BUYER)
        self.assertEqual(
            [t["to_status"] for t in res.get_json()["transitions"]],
            ["pending", "confirmed", "out_for_delivery", "delivered", "disputed", "refunded"],
        )
        events = {(s["recipient_id"], s["event"]) for s in SENT}
        self.assertIn(("driver-1", "route_assigned"), events)

    def test_buyer_cancels_pending_order(self):
        self._deposit(BUYER, 500, "topup-1")
        order_id = self._create_order().get_json()["order"]["id"]

        res = self.client.post(f"/api/orders/{order_id}/cancel", json={"reason": "changed mind"}, headers=BUYER)
        self.assertEqual(res.get_json()["order"]["status"], "cancelled")
        wallet = self.client.get("/api/wallet", headers=BUYER).get_json()["wallet"]
        self.assertEqual(wallet["available"], 500)

        res = self.client.post(f"/api/orders/{order_id}/cancel", headers=BUYER)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "InvalidTransition")

    def test_second_buyer_gets_conflict_on_reserved_product(self):
        self._create_order(payment_method="cash")
        res = self.client.post(
            "/api/orders",
            json={
                "product_id": "prod-1",
                "seller_id": "seller-1",
                "amount": 500,
                "payment_method": "cash",
                "pickup": SELLER_PICKUP,
                "dropoff": BUYER_DROPOFF,
            },
            headers={"X-Actor-Id": "buyer-2"},
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ProductUnavailable")

    def test_order_listing_by_role(self):
        self._create_order("prod-1", payment_method="cash")
        self._create_order("prod-2", payment_method="cash")

        mine = self.client.get("/api/orders", headers=BUYER).get_json()
        self.assertEqual(mine["count"], 2)
        sold = self.client.get("/api/orders?role=seller", headers=SELLER).get_json()
        self.assertEqual(sold["count"], 2)
        nothing = self.client.get("/api/orders?role=seller", headers=BUYER).get_json()
        self.assertEqual(nothing["count"], 0)
        self.assertEqual(self.client.get("/api/orders?role=driver", headers=BUYER).status_code, 400)
        everyone = self.client.get("/api/orders?buyer_id=buyer-1", headers=OPERATOR).get_json()
        self.assertEqual(everyone["count"], 2)

    def test_route_endpoints_are_operator_or_driver_only(self):
        self._create_order(payment_method="cash")
        self.assertEqual(self.client.get("/api/routes/batches", headers=BUYER).status_code, 403)
        self.assertEqual(self.client.post("/api/routes/checkpoints", json={}, headers=DRIVER).status_code, 403)

        empty = self.client.post("/api/routes/checkpoints", json={}, headers=OPERATOR)
        self.assertEqual(empty.status_code, 200)
        self.assertIsNone(empty.get_json()["batch"])

        bad = self.client.post(
            "/api/routes/checkpoints",
            json={"batch_date": "2026-13-01", "time_slot": "morning"},
            headers=OPERATOR,
        )
        self.assertEqual(bad.status_code, 400)

        tomorrow = (datetime.utcnow() + timedelta(days=1)).date().isoformat()
        early = self.client.post(
            "/api/routes/checkpoints",
            json={"batch_date": tomorrow, "time_slot": "morning"},
            headers=OPERATOR,
        )
        self.assertEqual(early.status_code, 400)
        self.assertEqual(early.get_json()["error"], "ValidationError")
        self.assertIn("window_end", early.get_json()["details"])

    def test_dispatch_rejects_non_list_drivers(self):
        order_id = self._create_order(payment_method="cash").get_json()["order"]["id"]
        self.client.post(f"/api/orders/{order_id}/confirm", headers=SELLER)
        batch = self._batch_latest(order_id)

        res = self.client.post(
            f"/api/routes/batches/{batch['id']}/dispatch",
            json={"driver_ids": "driver-1"},
            headers=OPERATOR,
        )
        self.assertEqual(res.status_code, 400)
        listed = self.client.get("/api/routes/batches?status=ready", headers=OPERATOR).get_json()
        self.assertEqual([b["id"] for b in listed["items"]], [batch["id"]])

        route_id = batch["route_ids"][0]
        self.assertEqual(self.client.get(f"/api/routes/{route_id}", headers=DRIVER).status_code, 403)

    def test_health_reports_providers(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertIn("payments", body)
        self.assertIn("dispatch", body)


if __name__ == "__main__":
    unittest.main()
