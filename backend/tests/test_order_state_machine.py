from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from fulfillment_fixtures import (
    FulfillmentAppMixin,
    deliver,
    fund,
    place_order,
    route_for,
)

from marketroute.errors import (
    InsufficientFunds,
    InvalidTransition,
    NotFound,
    NotRouted,
    ProductUnavailable,
    Unauthorized,
    ValidationError,
)
from marketroute.integrations.dispatch.mock_provider import SENT
from marketroute.models import Order, PlatformEvent
from marketroute.services import ledger_service, order_service, reservation_service, scheduler_service
from marketroute.services.ledger_service import HoldStatus
from marketroute.services.order_service import OrderStatus
from marketroute.services.reservation_service import ReservationStatus

T0 = datetime(2026, 3, 10, 9, 0)


class OrderStateMachineTestCase(FulfillmentAppMixin, unittest.TestCase):
    def test_wallet_order_reserves_product_and_holds_funds(self):
        fund("buyer-1", 500)
        order = place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 0)
        self.assertEqual(ledger_service.get_hold(order.hold_id).status, HoldStatus.HELD)
        reservation = reservation_service.get_reservation("prod-1")
        self.assertEqual(reservation.status, ReservationStatus.RESERVED)
        self.assertEqual(reservation.reserved_for_order_id, order.id)
        history = order_service.order_history(order.id)
        self.assertEqual([(t.from_status, t.to_status) for t in history], [("", "pending")])
        self.assertEqual({s["recipient_id"] for s in SENT}, {"buyer-1", "seller-1"})

    def test_cash_order_places_no_hold(self):
        order = place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", now=T0)
        self.assertIsNone(order.hold_id)
        self.assertEqual(order.payment_method, "cash")

    def test_insufficient_funds_leaves_nothing_behind(self):
        fund("buyer-1", 100)
        with self.assertRaises(InsufficientFunds):
            place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)
        self.assertEqual(Order.query.count(), 0)
        self.assertEqual(reservation_service.reservation_status("prod-1"), ReservationStatus.AVAILABLE)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 100)

    def test_reserved_product_rejects_second_buyer(self):
        fund("buyer-1", 500)
        fund("buyer-2", 500)
        place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)

        with self.assertRaises(ProductUnavailable):
            place_order("buyer-2", "seller-1", "prod-1", 500, now=T0)
        self.assertEqual(Order.query.filter_by(product_id="prod-1").count(), 1)
        self.assertEqual(ledger_service.available_balance("buyer-2"), 500)

    def test_invalid_order_input(self):
        with self.assertRaises(ValidationError):
            place_order("buyer-1", "buyer-1", "prod-1", 500, payment_method="cash")
        with self.assertRaises(ValidationError):
            place_order("buyer-1", "seller-1", "prod-1", 0, payment_method="cash")
        with self.assertRaises(ValidationError):
            place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="card")
        with self.assertRaises(ValidationError):
            place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", dropoff={"address": "nowhere"})
        with self.assertRaises(ValidationError):
            place_order(
                "buyer-1",
                "seller-1",
                "prod-1",
                500,
                payment_method="cash",
                window_start=T0 + timedelta(hours=5),
                window_end=T0 + timedelta(hours=4),
            )
        self.assertEqual(Order.query.count(), 0)

    def test_cancel_before_confirm_refunds_full_balance(self):
        fund("buyer-1", 500)
        order = place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 0)

        cancelled = order_service.cancel_order(order.id, "buyer-1", reason="changed mind")

        self.assertEqual(cancelled.status, OrderStatus.CANCELLED)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 500)
        self.assertEqual(ledger_service.get_hold(order.hold_id).status, HoldStatus.REFUNDED)
        self.assertEqual(reservation_service.reservation_status("prod-1"), ReservationStatus.AVAILABLE)
        # The listing can be bought again once the first order is terminal.
        fund("buyer-2", 500)
        again = place_order("buyer-2", "seller-1", "prod-1", 500, now=T0)
        self.assertEqual(again.status, OrderStatus.PENDING)

    def test_relisted_product_keeps_its_seller(self):
        fund("buyer-1", 500)
        first = place_order("buyer-1", "seller-a", "prod-9", 500, now=T0)
        order_service.cancel_order(first.id, "buyer-1")

        with self.assertRaises(ValidationError):
            place_order("buyer-1", "accomplice", "prod-9", 500, now=T0)

        row = reservation_service.get_reservation("prod-9")
        self.assertEqual(row.seller_id, "seller-a")
        self.assertEqual(row.status, ReservationStatus.AVAILABLE)
        self.assertEqual(Order.query.filter_by(seller_id="accomplice").count(), 0)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 500)

    def test_only_pending_orders_can_be_cancelled(self):
        order = place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", now=T0)
        with self.assertRaises(Unauthorized):
            order_service.cancel_order(order.id, "stranger")
        order_service.confirm_order(order.id, "seller-1", now=T0)
        with self.assertRaises(InvalidTransition):
            order_service.cancel_order(order.id, "buyer-1")

    def test_confirm_is_seller_only_and_not_repeatable(self):
        order = place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", now=T0)
        with self.assertRaises(Unauthorized):
            order_service.confirm_order(order.id, "buyer-1")

        confirmed = order_service.confirm_order(order.id, "seller-1", now=T0 + timedelta(minutes=30))
        self.assertEqual(confirmed.status, OrderStatus.CONFIRMED)
        self.assertIsNone(reservation_service.get_reservation("prod-1").reserved_until)

        with self.assertRaises(InvalidTransition):
            order_service.confirm_order(order.id, "seller-1")

    def test_out_for_delivery_requires_dispatched_route(self):
        order = place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", now=T0)
        with self.assertRaises(InvalidTransition):
            order_service.mark_out_for_delivery(order.id, "route-x")

        order_service.confirm_order(order.id, "seller-1", now=T0)
        with self.assertRaises(NotRouted):
            order_service.mark_out_for_delivery(order.id, "route-x")

        # Batched but not yet dispatched.
        batch_date, slot, _ = scheduler_service.latest_checkpoint(datetime(2026, 3, 10, 13, 5))
        scheduler_service.run_checkpoint(batch_date, slot, now=datetime(2026, 3, 10, 13, 5))
        route = route_for(order.id)
        with self.assertRaises(NotRouted):
            order_service.mark_out_for_delivery(order.id, route.id)

        scheduler_service.dispatch_batch(route.batch_id, ["driver-1"])
        with self.assertRaises(Unauthorized):
            order_service.mark_out_for_delivery(order.id, route.id, "driver-9")
        out = order_service.mark_out_for_delivery(order.id, route.id, "driver-1")
        self.assertEqual(out.status, OrderStatus.OUT_FOR_DELIVERY)
        self.assertEqual(out.route_id, route.id)

    def test_delivery_starts_dispute_window_and_sells_product(self):
        fund("buyer-1", 500)
        order = place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)
        delivered_at = datetime(2026, 3, 10, 15, 0)
        with self.assertRaises(Unauthorized):
            order_service.confirm_delivery(order.id, "seller-1")

        delivered = deliver(
            order,
            confirmed_at=T0 + timedelta(minutes=30),
            routed_at=datetime(2026, 3, 10, 13, 10),
            delivered_at=delivered_at,
        )

        self.assertEqual(delivered.status, OrderStatus.DELIVERED)
        self.assertEqual(delivered.dispute_deadline, delivered_at + timedelta(hours=12))
        self.assertEqual(reservation_service.reservation_status("prod-1"), ReservationStatus.SOLD)
        # Funds stay in escrow until the window closes.
        self.assertEqual(ledger_service.balance("seller-1"), 0)
        self.assertEqual(ledger_service.get_hold(order.hold_id).status, HoldStatus.HELD)
        self.assertEqual(
            [t.to_status for t in order_service.order_history(order.id)],
            ["pending", "confirmed", "out_for_delivery", "delivered"],
        )
        self.assertEqual(PlatformEvent.query.filter_by(event_type="order_delivered", subject_id=order.id).count(), 1)

        with self.assertRaises(InvalidTransition):
            order_service.confirm_delivery(order.id, "buyer-1")

    def test_stale_pending_orders_are_cancelled_when_reservation_lapses(self):
        fund("buyer-1", 1000)
        stale = place_order("buyer-1", "seller-1", "prod-1", 500, now=T0)
        kept = place_order("buyer-1", "seller-2", "prod-2", 500, now=T0)
        order_service.confirm_order(kept.id, "seller-2", now=T0 + timedelta(hours=1))

        summary = order_service.expire_stale_reservations(T0 + timedelta(days=8))

        self.assertEqual(summary["cancelled"], 1)
        self.assertEqual(summary["errors"], 0)
        self.assertEqual(order_service.get_order(stale.id).status, OrderStatus.CANCELLED)
        self.assertEqual(order_service.get_order(kept.id).status, OrderStatus.CONFIRMED)
        self.assertEqual(ledger_service.available_balance("buyer-1"), 500)

    def test_list_and_lookup(self):
        place_order("buyer-1", "seller-1", "prod-1", 500, payment_method="cash", now=T0)
        place_order("buyer-2", "seller-1", "prod-2", 700, payment_method="cash", now=T0)

        self.assertEqual(len(order_service.list_orders(seller_id="seller-1")), 2)
        self.assertEqual(len(order_service.list_orders(buyer_id="buyer-2")), 1)
        self.assertEqual(len(order_service.list_orders(status=OrderStatus.CONFIRMED)), 0)
        with self.assertRaises(ValidationError):
            order_service.list_orders(status="teleported")
        with self.assertRaises(NotFound):
            order_service.get_order("missing")


if __name__ == "__main__":
    unittest.main()
