from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from fulfillment_fixtures import FulfillmentAppMixin

from marketroute.errors import Conflict, InvalidTransition, ProductUnavailable, ValidationError
from marketroute.extensions import db
from marketroute.models import ProductReservation
from marketroute.services import reservation_service
from marketroute.services.reservation_service import ReservationStatus


class ReservationServiceTestCase(FulfillmentAppMixin, unittest.TestCase):
    def test_unknown_product_is_available(self):
        self.assertEqual(reservation_service.reservation_status("prod-x"), ReservationStatus.AVAILABLE)
        self.assertIsNone(reservation_service.get_reservation("prod-x"))

    def test_reserve_then_second_reserve_is_unavailable(self):
        now = datetime(2026, 3, 10, 9, 0)
        row = reservation_service.reserve("prod-1", "order-1", timedelta(hours=2), seller_id="seller-1", now=now)
        db.session.commit()
        self.assertEqual(row.status, ReservationStatus.RESERVED)
        self.assertEqual(row.reserved_for_order_id, "order-1")
        self.assertEqual(row.reserved_until, now + timedelta(hours=2))
        self.assertEqual(row.version, 1)

        with self.assertRaises(ProductUnavailable) as ctx:
            reservation_service.reserve("prod-1", "order-2", None)
        self.assertEqual(ctx.exception.product_id, "prod-1")

    def test_reserve_never_changes_the_recorded_seller(self):
        reservation_service.reserve("prod-1", "order-1", None, seller_id="seller-1")
        reservation_service.release("prod-1", "order-1")
        db.session.commit()

        with self.assertRaises(ValidationError):
            reservation_service.reserve("prod-1", "order-2", None, seller_id="seller-2")
        row = reservation_service.get_reservation("prod-1")
        self.assertEqual((row.seller_id, row.status), ("seller-1", ReservationStatus.AVAILABLE))

        again = reservation_service.reserve("prod-1", "order-3", None, seller_id="seller-1")
        self.assertEqual(again.reserved_for_order_id, "order-3")

    def test_release_only_frees_the_holding_order(self):
        reservation_service.reserve("prod-1", "order-1", None)
        db.session.commit()

        reservation_service.release("prod-1", "order-2")
        self.assertEqual(reservation_service.reservation_status("prod-1"), ReservationStatus.RESERVED)

        reservation_service.release("prod-1", "order-1")
        db.session.commit()
        self.assertEqual(reservation_service.reservation_status("prod-1"), ReservationStatus.AVAILABLE)

        again = reservation_service.release("prod-1", "order-1")
        self.assertEqual(again.status, ReservationStatus.AVAILABLE)

    def test_sold_requires_reserved_and_reopen_offers_again(self):
        with self.assertRaises(InvalidTransition):
            reservation_service.mark_sold("prod-1")

        reservation_service.reserve("prod-1", "order-1", timedelta(days=7))
        reservation_service.hold_until_fulfilled("prod-1", "order-1")
        sold = reservation_service.mark_sold("prod-1", "order-1")
        db.session.commit()
        self.assertEqual(sold.status, ReservationStatus.SOLD)
        self.assertIsNone(sold.reserved_until)

        unchanged = reservation_service.release("prod-1", "order-1")
        self.assertEqual(unchanged.status, ReservationStatus.SOLD)
        with self.assertRaises(InvalidTransition):
            reservation_service.mark_sold("prod-1", "order-9")

        reopened = reservation_service.reopen("prod-1")
        db.session.commit()
        self.assertEqual(reopened.status, ReservationStatus.AVAILABLE)
        self.assertIsNone(reopened.reserved_for_order_id)

    def test_stale_version_loses_compare_and_set(self):
        reservation_service.reserve("prod-1", "order-1", None)
        db.session.commit()
        row = reservation_service.get_reservation("prod-1")
        self.assertEqual(row.version, 1)

        # Another writer bumps the row behind this session's back.
        ProductReservation.query.filter_by(product_id="prod-1").update(
            {"version": 7}, synchronize_session=False
        )

        with self.assertRaises(Conflict):
            reservation_service.release("prod-1", "order-1")

    def test_expired_reservations_are_listed_oldest_first(self):
        now = datetime(2026, 3, 10, 9, 0)
        reservation_service.reserve("prod-1", "order-1", timedelta(hours=1), now=now)
        reservation_service.reserve("prod-2", "order-2", timedelta(hours=3), now=now)
        reservation_service.reserve("prod-3", "order-3", None, now=now)
        db.session.commit()

        rows = reservation_service.expired_reservations(now + timedelta(hours=2))
        self.assertEqual([r.product_id for r in rows], ["prod-1"])
        rows = reservation_service.expired_reservations(now + timedelta(hours=5))
        self.assertEqual([r.product_id for r in rows], ["prod-1", "prod-2"])


if __name__ == "__main__":
    unittest.main()
